"""
Collector Pipeline for telerelay Agent

Runs every collection task on its own schedule and pushes the produced
samples into the outbound queue. A failing collector is logged, counted and
retried on its next tick without affecting the others.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Union, Awaitable

import pydantic

from ..exceptions import CollectError
from ..protocol.message_types import Sample
from .buffer import SampleQueue
from .collector import build_collector
from .config import CollectorSpec
from .modules import TaskManager


class Collectable(Protocol):
    """Anything with a name that can produce a Sample (sync or async)"""

    name: str

    def collect(self) -> Union[Sample, Awaitable[Sample]]:
        ...


@dataclass
class ScheduledTask:
    """A collection task and its interval"""
    task: Collectable
    interval: float
    samples: int = 0
    errors: int = 0
    last_error: Optional[str] = None


class CollectorPipeline:
    """Scheduler for independent collection tasks"""

    def __init__(self, queue: SampleQueue, task_manager: Optional[TaskManager] = None):
        self.logger = logging.getLogger(__name__)
        self.queue = queue
        self.task_manager = task_manager or TaskManager(self.logger)
        self.scheduled: List[ScheduledTask] = []
        self.running = False

    @classmethod
    def from_config(
        cls,
        specs: List[CollectorSpec],
        queue: SampleQueue,
        task_manager: Optional[TaskManager] = None,
    ) -> "CollectorPipeline":
        """Build a pipeline from collector config entries (ConfigError on unknown names)"""
        pipeline = cls(queue, task_manager)
        for spec in specs:
            pipeline.register(build_collector(spec), spec.interval)
        return pipeline

    def register(self, task: Collectable, interval: float) -> ScheduledTask:
        """Register a collection task to run every interval seconds"""
        if interval <= 0:
            raise ValueError("interval must be positive")
        scheduled = ScheduledTask(task=task, interval=interval)
        self.scheduled.append(scheduled)
        return scheduled

    def start(self) -> None:
        """Start one asyncio task per collector"""
        if self.running:
            self.logger.warning("Collector pipeline already running")
            return
        self.running = True
        for scheduled in self.scheduled:
            self.task_manager.create_task(
                self._run_scheduled(scheduled),
                name=f"collector:{scheduled.task.name}",
            )
        self.logger.info(f"Started {len(self.scheduled)} collectors")

    async def stop(self) -> None:
        """Stop all collector tasks"""
        self.running = False
        await self.task_manager.cancel_all()

    async def _run_scheduled(self, scheduled: ScheduledTask) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time()
        try:
            while self.running:
                await self.collect_once(scheduled)

                next_run += scheduled.interval
                delay = next_run - loop.time()
                if delay < 0:
                    # Collection overran its interval: skip missed ticks
                    next_run = loop.time()
                    delay = 0
                await asyncio.sleep(delay)
        finally:
            self.logger.debug(f"Collector {scheduled.task.name} stopped")

    async def collect_once(self, scheduled: ScheduledTask) -> Optional[Sample]:
        """Run one collection and enqueue the sample; errors are contained"""
        name = scheduled.task.name
        try:
            result = scheduled.task.collect()
            if inspect.isawaitable(result):
                result = await result
        except CollectError as e:
            self._record_error(scheduled, str(e))
            self.logger.warning(f"Collector {name} failed: {e}")
            return None
        except pydantic.ValidationError as e:
            self._record_error(scheduled, f"invalid sample: {e.error_count()} errors")
            self.logger.warning(f"Collector {name} produced an invalid sample: {e}")
            return None
        except Exception as e:
            self._record_error(scheduled, str(e))
            self.logger.error(f"Unexpected error in collector {name}: {e}")
            return None

        scheduled.samples += 1
        if self.queue.put(result):
            self.logger.debug(f"Outbound queue full, oldest sample dropped (total dropped: {self.queue.dropped})")
        return result

    def _record_error(self, scheduled: ScheduledTask, message: str) -> None:
        scheduled.errors += 1
        scheduled.last_error = message

    def stats(self) -> Dict[str, Any]:
        return {
            scheduled.task.name: {
                "interval": scheduled.interval,
                "samples": scheduled.samples,
                "errors": scheduled.errors,
                "last_error": scheduled.last_error,
            }
            for scheduled in self.scheduled
        }
