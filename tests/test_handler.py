"""Server-side session handling: registration, liveness and batch replies."""

import asyncio

import pytest

from telerelay.agent.buffer import SampleQueue
from telerelay.agent.config import AgentConfig, BackoffConfig
from telerelay.agent.delivery import DeliveryManager
from telerelay.core.api.agent_handler import AgentSessionHandler
from telerelay.core.config import ServerConfig
from telerelay.core.ingestion import IngestionPipeline
from telerelay.core.registry import SUPERSEDED_REASON, ConnectionRegistry
from telerelay.exceptions import HandshakeRejected
from telerelay.protocol.codec import FrameCodec
from telerelay.protocol.message_types import AckMessage, BatchMessage, BatchRejectMessage, CloseMessage
from telerelay.protocol.session import Session, SessionState

from conftest import MemoryNetwork, RecordingSink, make_samples, wait_until


class Server:
    """AgentSessionHandler wired to a recording sink over a MemoryNetwork"""

    def __init__(self, sink=None, **overrides):
        self.config = ServerConfig(sink_retry_delay_ms=0, **overrides)
        self.sink = sink or RecordingSink()
        self.registry = ConnectionRegistry()
        self.ingestion = IngestionPipeline(
            [self.sink],
            max_batch_samples=self.config.max_batch_samples,
            retry_attempts=self.config.sink_retry_attempts,
            retry_delay=self.config.sink_retry_delay,
        )
        self.handler = AgentSessionHandler(self.config, self.registry, self.ingestion)
        self.network = MemoryNetwork(self.handler.handle)

    async def open_client(self, identity="web-01", heartbeat_interval=5.0):
        return await Session.open(
            identity,
            "memory://server",
            connect=self.network.connect,
            codec=FrameCodec(),
            heartbeat_interval=heartbeat_interval,
        )


@pytest.fixture
async def server():
    harness = Server()
    yield harness
    await harness.network.shutdown()


async def next_reply(session):
    return await asyncio.wait_for(anext(session.receive()), timeout=2.0)


async def test_accepted_agent_is_registered(server):
    client = await server.open_client()

    await wait_until(lambda: server.registry.active_sessions.get("web-01") is not None)
    registered = await server.registry.lookup("web-01")
    assert registered.session_id == client.session_id
    assert registered.capabilities == []
    await client.close()


async def test_session_ends_removes_registry_entry(server):
    client = await server.open_client()
    await wait_until(lambda: "web-01" in server.registry.active_sessions)

    await client.close("done")

    await wait_until(lambda: "web-01" not in server.registry.active_sessions)


async def test_reconnect_supersedes_previous_session(server):
    first = await server.open_client()
    await wait_until(lambda: "web-01" in server.registry.active_sessions)
    second = await server.open_client()

    close = await next_reply(first)
    assert isinstance(close, CloseMessage)
    assert close.reason == SUPERSEDED_REASON
    await first.close()

    registered = await server.registry.lookup("web-01")
    assert registered.session_id == second.session_id
    assert await server.registry.count() == 1
    await second.close()


async def test_unlisted_agent_is_rejected():
    harness = Server(allowed_agents=["db-01"])
    with pytest.raises(HandshakeRejected, match="not allowed"):
        await harness.open_client("web-01")
    assert await harness.registry.count() == 0
    await harness.network.shutdown()


async def test_silent_agent_is_closed_after_missed_heartbeats(server):
    client = await server.open_client(heartbeat_interval=0.05)
    await wait_until(lambda: "web-01" in server.registry.active_sessions)

    await wait_until(lambda: "web-01" not in server.registry.active_sessions, timeout=2.0)
    close = await next_reply(client)
    assert close.reason == "missed 3 heartbeats"


async def test_heartbeats_keep_session_alive(server):
    client = await server.open_client(heartbeat_interval=0.05)
    client.start_heartbeats()

    await asyncio.sleep(0.4)

    session = await server.registry.lookup("web-01")
    assert session is not None
    assert session.state is SessionState.ESTABLISHED
    await client.close()


async def test_liveness_window_is_capped_by_session_timeout():
    harness = Server(session_timeout_ms=100, max_missed_heartbeats=100)
    await harness.open_client(heartbeat_interval=5.0)
    await wait_until(lambda: "web-01" in harness.registry.active_sessions)

    await wait_until(lambda: "web-01" not in harness.registry.active_sessions, timeout=2.0)
    await harness.network.shutdown()


async def test_batch_is_acknowledged(server):
    client = await server.open_client()
    await client.send_batch(BatchMessage(sequence=1, samples=make_samples(3)))

    assert await next_reply(client) == AckMessage(sequence=1)
    assert server.ingestion.high_water_mark("web-01") == 1
    assert len(server.sink.samples) == 3
    await client.close()


async def test_invalid_batch_is_rejected_for_good():
    harness = Server(max_batch_samples=2)
    client = await harness.open_client()
    await client.send_batch(BatchMessage(sequence=1, samples=make_samples(5)))

    reply = await next_reply(client)
    assert isinstance(reply, BatchRejectMessage)
    assert not reply.retryable
    assert "limit 2" in reply.reason
    assert not harness.sink.batches
    await client.close()
    await harness.network.shutdown()


async def test_sink_failure_asks_for_redelivery():
    harness = Server(sink=RecordingSink(failures=3), sink_retry_attempts=3)
    client = await harness.open_client()
    await client.send_batch(BatchMessage(sequence=1, samples=make_samples(2)))

    reply = await next_reply(client)
    assert isinstance(reply, BatchRejectMessage)
    assert reply.retryable
    assert harness.ingestion.high_water_mark("web-01") == 0
    await client.close()
    await harness.network.shutdown()


async def test_delivery_redelivers_after_sink_failure():
    harness = Server(sink=RecordingSink(failures=3), sink_retry_attempts=3)
    queue = SampleQueue(100)
    for sample in make_samples(4):
        queue.put(sample)
    delivery = DeliveryManager(
        AgentConfig(
            endpoint="memory://server",
            agent_identity="web-01",
            batch_interval_ms=50,
            ack_timeout_ms=1000,
            reconnect_backoff=BackoffConfig(initial_ms=10, max_ms=50, jitter=0.0),
        ),
        queue,
        connect=harness.network.connect,
    )

    delivery.start()
    await wait_until(lambda: delivery.samples_delivered == 4)
    await delivery.stop()

    assert delivery.send_failures == 1
    assert delivery.connects == 2
    assert [batch.sequence for _, batch in harness.sink.batches] == [1]
    assert harness.ingestion.high_water_mark("web-01") == 1
    await harness.network.shutdown()


class SlowSink(RecordingSink):
    """Recording sink that takes a while for every batch"""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def send(self, identity, batch):
        await asyncio.sleep(self.delay)
        await super().send(identity, batch)


async def test_slow_sink_does_not_starve_heartbeats():
    harness = Server(sink=SlowSink(0.8))
    client = await harness.open_client(heartbeat_interval=0.1)
    client.start_heartbeats()

    await client.send_batch(BatchMessage(sequence=1, samples=make_samples(2)))

    assert await next_reply(client) == AckMessage(sequence=1)
    session = await harness.registry.lookup("web-01")
    assert session.state is SessionState.ESTABLISHED
    await client.close()
    await harness.network.shutdown()


async def test_batches_are_answered_in_arrival_order():
    harness = Server(sink=SlowSink(0.1))
    client = await harness.open_client()
    replies = client.receive()

    await client.send_batch(BatchMessage(sequence=1, samples=make_samples(1)))
    await client.send_batch(BatchMessage(sequence=2, samples=make_samples(1, start=1_700_000_100.0)))

    first = await asyncio.wait_for(anext(replies), timeout=2.0)
    second = await asyncio.wait_for(anext(replies), timeout=2.0)
    assert [first.sequence, second.sequence] == [1, 2]
    assert [batch.sequence for _, batch in harness.sink.batches] == [1, 2]
    await client.close()
    await harness.network.shutdown()
