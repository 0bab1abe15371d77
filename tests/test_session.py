"""Transport session tests: handshake, heartbeats, receive and close."""

import asyncio

import pytest

from telerelay.exceptions import ConnectError, HandshakeRejected, ProtocolError, SendError
from telerelay.protocol.codec import FrameCodec
from telerelay.protocol.message_types import (
    AckMessage,
    BatchMessage,
    CloseMessage,
    HandshakeRequest,
    HandshakeResponse,
    Heartbeat,
)
from telerelay.protocol.session import Session, SessionState

from conftest import connection_pair, make_samples


async def open_pair(codec, *, authorize=None, heartbeat_interval=5.0):
    """Run both halves of the handshake over an in-memory pair"""
    agent_side, server_side = connection_pair()

    async def connect(endpoint):
        return agent_side

    accept = asyncio.create_task(Session.accept(server_side, codec=codec, authorize=authorize))
    agent = await Session.open(
        "web-01", "memory://server", connect=connect, codec=codec,
        capabilities=["batch"], heartbeat_interval=heartbeat_interval, handshake_timeout=2.0,
    )
    server = await accept
    return agent, server


async def test_handshake_establishes_both_sides(codec):
    agent, server = await open_pair(codec)

    assert agent.state is SessionState.ESTABLISHED
    assert server.state is SessionState.ESTABLISHED
    assert server.identity == "web-01"
    assert server.capabilities == ["batch"]
    assert agent.session_id == server.session_id

    await agent.close()
    await server.close()


async def test_encrypted_handshake(secure_codec):
    agent, server = await open_pair(secure_codec)
    assert server.is_established
    await agent.close()
    await server.close()


async def test_rejected_handshake_carries_reason(codec):
    with pytest.raises(HandshakeRejected) as excinfo:
        await open_pair(codec, authorize=lambda request: "not on the list")
    assert excinfo.value.reason == "not on the list"
    assert isinstance(excinfo.value, ConnectError)


async def test_protocol_version_mismatch_is_rejected(codec):
    agent_side, server_side = connection_pair()
    accept = asyncio.create_task(Session.accept(server_side, codec=codec))

    await agent_side.send_bytes(codec.encode(HandshakeRequest(agent_identity="web-01", protocol_version=99)))
    response = codec.decode(await agent_side.recv_bytes())

    assert isinstance(response, HandshakeResponse)
    assert not response.accepted
    assert "version" in response.reason
    with pytest.raises(HandshakeRejected):
        await accept


async def test_first_frame_must_be_handshake(codec):
    agent_side, server_side = connection_pair()
    accept = asyncio.create_task(Session.accept(server_side, codec=codec))
    await agent_side.send_bytes(codec.encode(Heartbeat()))
    with pytest.raises(ProtocolError):
        await accept


async def test_handshake_timeout(codec):
    agent_side, server_side = connection_pair()

    async def connect(endpoint):
        return agent_side

    with pytest.raises(ConnectError, match="No handshake response"):
        await Session.open("web-01", "memory://server", connect=connect, codec=codec, handshake_timeout=0.1)
    assert agent_side.closed


async def test_unreachable_endpoint(codec):
    async def connect(endpoint):
        raise OSError("connection refused")

    with pytest.raises(ConnectError, match="Cannot connect"):
        await Session.open("web-01", "memory://server", connect=connect, codec=codec)


async def test_key_mismatch_fails_handshake():
    agent_codec = FrameCodec(shared_key="agent-key")
    server_codec = FrameCodec(shared_key="server-key")
    agent_side, server_side = connection_pair()

    async def connect(endpoint):
        return agent_side

    accept = asyncio.create_task(Session.accept(server_side, codec=server_codec))
    with pytest.raises(ConnectError):
        await Session.open("web-01", "memory://server", connect=connect, codec=agent_codec, handshake_timeout=0.5)
    with pytest.raises(ProtocolError):
        await accept


async def test_batches_and_acks_flow(codec):
    agent, server = await open_pair(codec)
    server_messages = server.receive()
    agent_messages = agent.receive()

    await agent.send_batch(BatchMessage(sequence=1, samples=make_samples(2)))
    received = await server_messages.__anext__()
    assert isinstance(received, BatchMessage)
    assert received.sequence == 1

    await server.send(AckMessage(sequence=1))
    ack = await agent_messages.__anext__()
    assert ack == AckMessage(sequence=1)

    await agent.close()
    await server.close()


async def test_heartbeats_are_consumed_internally(codec):
    agent, server = await open_pair(codec)
    messages = server.receive()

    await agent.send(Heartbeat())
    await agent.send(BatchMessage(sequence=1, samples=make_samples(1)))

    first = await messages.__anext__()
    assert isinstance(first, BatchMessage)
    assert server.missed_heartbeats == 0

    await agent.close()
    await server.close()


async def test_receive_can_only_be_called_once(codec):
    agent, server = await open_pair(codec)
    server.receive()
    with pytest.raises(RuntimeError):
        server.receive()
    await agent.close()
    await server.close()


async def test_close_is_idempotent_and_notifies_peer(codec):
    agent, server = await open_pair(codec)
    messages = server.receive()

    await agent.close("agent stopping")
    await agent.close()
    assert agent.state is SessionState.CLOSED

    close_message = await messages.__anext__()
    assert isinstance(close_message, CloseMessage)
    assert close_message.reason == "agent stopping"

    with pytest.raises(StopAsyncIteration):
        await messages.__anext__()
    assert server.state is SessionState.CLOSED
    assert server.close_reason == "agent stopping"


async def test_close_cancels_pending_receive(codec):
    agent, server = await open_pair(codec)

    async def consume():
        return [message async for message in server.receive()]

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.05)
    await server.close("shutdown")

    assert await asyncio.wait_for(consumer, timeout=1.0) == []
    assert server.state is SessionState.CLOSED
    await agent.close()


async def test_send_after_close_raises(codec):
    agent, server = await open_pair(codec)
    await agent.close()
    with pytest.raises(SendError):
        await agent.send(Heartbeat())
    await server.close()


async def test_lost_connection_fails_session(codec):
    agent, server = await open_pair(codec)
    messages = server.receive()

    agent.connection.break_link()

    with pytest.raises(StopAsyncIteration):
        await messages.__anext__()
    assert server.state is SessionState.FAILED
    with pytest.raises(SendError):
        await server.send(AckMessage(sequence=1))
    await agent.close()


async def test_unexpected_handshake_is_protocol_error(codec):
    agent, server = await open_pair(codec)
    messages = server.receive()

    await agent.connection.send_bytes(codec.encode(HandshakeRequest(agent_identity="web-01")))
    with pytest.raises(ProtocolError):
        await messages.__anext__()
    assert server.state is SessionState.FAILED
    await agent.close()


async def test_missed_heartbeats_close_session(codec):
    agent, server = await open_pair(codec, heartbeat_interval=0.05)
    server.start_watchdog(max_missed=3)

    await asyncio.wait_for(server.wait_closed(), timeout=2.0)
    assert server.state is SessionState.CLOSED
    assert "missed 3 heartbeats" in server.close_reason
    await agent.close()


async def test_heartbeats_keep_session_alive(codec):
    agent, server = await open_pair(codec, heartbeat_interval=0.05)
    server.start_watchdog(max_missed=3)
    agent.start_heartbeats()

    async def consume():
        async for _ in server.receive():
            pass

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.5)
    assert server.state is SessionState.ESTABLISHED

    await agent.close()
    await asyncio.wait_for(consumer, timeout=1.0)
    await server.close()


async def test_illegal_transition_raises(codec):
    agent, server = await open_pair(codec)
    await agent.close()
    with pytest.raises(RuntimeError):
        agent._transition(SessionState.ESTABLISHED)
    await server.close()
