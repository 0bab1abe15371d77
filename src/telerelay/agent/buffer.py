"""
Outbound Sample Queue.

Bounded in-memory queue between the collectors and the delivery manager.
When full, the oldest unsent sample is dropped so collectors never block;
every drop is counted.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, List

from ..protocol.message_types import Sample

logger = logging.getLogger(__name__)


class SampleQueue:
    """
    Lossy bounded FIFO of samples.

    Many collector tasks put, one delivery manager drains. Everything runs on
    the event loop thread, so only the wake-up needs synchronisation.
    """

    def __init__(self, max_size: int):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._items: Deque[Sample] = deque()
        self._changed = asyncio.Event()
        self.dropped = 0
        self.enqueued = 0

    def __len__(self) -> int:
        return len(self._items)

    def put(self, sample: Sample) -> bool:
        """
        Enqueue a sample without blocking.

        Returns:
            True if the oldest queued sample had to be dropped
        """
        dropped = False
        if len(self._items) >= self.max_size:
            evicted = self._items.popleft()
            self.dropped += 1
            dropped = True
            logger.debug(f"Queue full, dropped oldest sample from '{evicted.source_name}'")

        self._items.append(sample)
        self.enqueued += 1
        self._changed.set()
        return dropped

    def drain(self, max_items: int) -> List[Sample]:
        """Remove and return up to max_items samples in FIFO order."""
        count = min(max_items, len(self._items))
        return [self._items.popleft() for _ in range(count)]

    async def wait_for(self, count: int, timeout: float) -> bool:
        """
        Wait until at least count samples are queued or timeout elapses.

        Returns:
            True if the threshold was reached
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self._items) < count:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return len(self._items) >= count
        return True

    def stats(self) -> dict:
        return {
            "queued": len(self._items),
            "max_size": self.max_size,
            "enqueued": self.enqueued,
            "dropped": self.dropped,
        }
