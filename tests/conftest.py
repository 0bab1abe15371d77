"""Shared fixtures: in-memory connections and a cuttable network."""

import asyncio
import time
from typing import Awaitable, Callable, List, Optional

import pytest

from telerelay.exceptions import TransportClosed
from telerelay.protocol.codec import FrameCodec
from telerelay.protocol.message_types import Sample

_EOF = object()


class MemoryConnection:
    """One end of an in-memory byte-message connection"""

    def __init__(self, remote_address: str):
        self.remote_address: Optional[str] = remote_address
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.peer: Optional["MemoryConnection"] = None
        self.closed = False
        self.sent: List[bytes] = []

    async def send_bytes(self, data: bytes) -> None:
        if self.closed or self.peer is None or self.peer.closed:
            raise TransportClosed("memory connection closed")
        self.sent.append(data)
        self.peer.inbox.put_nowait(data)

    async def recv_bytes(self) -> bytes:
        if self.closed:
            raise TransportClosed("memory connection closed")
        item = await self.inbox.get()
        if item is _EOF:
            self.closed = True
            raise TransportClosed("memory connection closed by peer")
        return item

    async def close(self) -> None:
        self.break_link()

    def break_link(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_EOF)
        peer = self.peer
        if peer is not None and not peer.closed:
            peer.inbox.put_nowait(_EOF)


def connection_pair():
    """(agent side, server side)"""
    agent_side = MemoryConnection("server:8470")
    server_side = MemoryConnection("agent:50000")
    agent_side.peer = server_side
    server_side.peer = agent_side
    return agent_side, server_side


class MemoryNetwork:
    """
    Hands out connection pairs to a server-side handler

    cut() breaks every live connection and refuses new ones until restore().
    """

    def __init__(self, handler: Callable[[MemoryConnection], Awaitable[None]]):
        self.handler = handler
        self.up = True
        self.connections: List[MemoryConnection] = []
        self.server_tasks: List[asyncio.Task] = []
        self.connect_attempts = 0

    async def connect(self, endpoint: str) -> MemoryConnection:
        self.connect_attempts += 1
        if not self.up:
            raise OSError(f"Network unreachable: {endpoint}")
        agent_side, server_side = connection_pair()
        self.connections.append(agent_side)
        self.server_tasks.append(asyncio.create_task(self.handler(server_side)))
        return agent_side

    def cut(self) -> None:
        self.up = False
        for connection in self.connections:
            connection.break_link()
        self.connections.clear()

    def restore(self) -> None:
        self.up = True

    async def shutdown(self) -> None:
        self.cut()
        for task in self.server_tasks:
            task.cancel()
        await asyncio.gather(*self.server_tasks, return_exceptions=True)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll predicate until it holds or fail the test"""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


class RecordingSink:
    """Sink that remembers every batch, optionally failing a few times first"""

    name = "recording"

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.batches = []

    async def send(self, identity, batch):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("sink unavailable")
        self.batches.append((identity, batch))

    async def close(self):
        pass

    @property
    def samples(self):
        return [sample for _, batch in self.batches for sample in batch.samples]


def make_samples(count: int, source: str = "cpu", start: float = 1_700_000_000.0):
    return [Sample(source_name=source, timestamp=start + i, value=i) for i in range(count)]


@pytest.fixture
def codec():
    return FrameCodec()


@pytest.fixture
def secure_codec():
    return FrameCodec(shared_key="test-secret")
