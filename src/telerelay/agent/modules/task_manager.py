"""
Task Manager for telerelay Agent

Collector loops and shutdown tasks are created here so they can be cancelled together.
Keeps task references so background loops are not garbage collected.
"""
import asyncio
import logging
from typing import Callable, Coroutine, Optional, Set

from .agent_exceptions import AsyncExceptionHandler


class TaskManager:
    """Owns the agent's background tasks and cancels them on shutdown"""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.tasks: Set[asyncio.Task] = set()
        self.exception_handler = AsyncExceptionHandler()

    def create_task(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """
        Create a task and keep a reference to it until it completes

        Args:
            coro: Coroutine to run
            name: Optional task name

        Returns:
            The created task
        """
        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self._cleanup_completed_task)

        self.logger.debug(f"Created task: {name or 'unnamed'}")
        return task

    def create_fire_and_forget_task(
        self,
        coro: Coroutine,
        name: Optional[str] = None,
        error_callback: Optional[Callable[[BaseException], None]] = None
    ) -> asyncio.Task:
        """
        Create a task whose failure is only logged (and reported to error_callback)
        """
        task = self.create_task(coro, name)

        def handle_completion(completed_task: asyncio.Task) -> None:
            if completed_task.cancelled():
                self.logger.debug(f"Background task {name} cancelled")
                return

            exception = completed_task.exception()
            if exception:
                self.logger.error(f"Background task {name} failed: {exception}")
                if error_callback:
                    error_callback(exception)

        task.add_done_callback(handle_completion)
        return task

    async def cancel_all(self, timeout: float = 5.0) -> None:
        """Cancel every managed task, waiting at most timeout seconds"""
        if not self.tasks:
            self.logger.debug("No background tasks to cancel")
            return

        self.logger.info(f"Stopping {len(self.tasks)} background tasks")

        try:
            await asyncio.wait_for(
                self.exception_handler.cleanup_task_set(self.tasks.copy(), self.logger),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            self.logger.warning(f"Task cancellation timed out after {timeout} seconds")

        self.tasks.clear()
        self.logger.info("Background tasks stopped")

    def get_running_tasks_count(self) -> int:
        """Number of managed tasks still running"""
        return sum(1 for task in self.tasks if not task.done())

    def _cleanup_completed_task(self, task: asyncio.Task) -> None:
        self.tasks.discard(task)
        self.logger.debug(f"Cleaned up completed task: {task.get_name()}")
