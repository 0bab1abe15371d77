"""
Async Exception Handler for telerelay Agent

Cancels background tasks and waits for them to finish.
"""
import asyncio
import logging
from typing import Iterable


class AsyncExceptionHandler:
    """Cancellation helpers shared by the agent's long-running components"""

    @staticmethod
    async def cleanup_task_set(
        tasks: Iterable[asyncio.Task],
        logger: logging.Logger
    ) -> None:
        """
        Cancel a set of tasks and wait for all of them

        The caller bounds the wait with asyncio.wait_for().
        """
        tasks = [task for task in tasks if not task.done()]
        if not tasks:
            return

        logger.debug(f"Cleaning up {len(tasks)} tasks")
        for task in tasks:
            task.cancel()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                logger.error(f"Task {task.get_name()} ended with an error: {result}")

        logger.debug("Task cleanup completed")
