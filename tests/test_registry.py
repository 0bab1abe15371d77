"""Connection registry: supersession and stale removal."""

from telerelay.core.registry import SUPERSEDED_REASON, ConnectionRegistry
from telerelay.protocol.session import Session, SessionState

from conftest import connection_pair


def established_session(codec, identity="web-01"):
    _, server_side = connection_pair()
    session = Session(server_side, identity, codec, capabilities=["batch"])
    session._transition(SessionState.ESTABLISHED)
    return session


async def test_register_and_lookup(codec):
    registry = ConnectionRegistry()
    session = established_session(codec)

    assert await registry.register("web-01", session) is None
    assert await registry.lookup("web-01") is session
    assert await registry.lookup("db-01") is None
    assert await registry.count() == 1


async def test_new_session_supersedes_and_closes_previous(codec):
    registry = ConnectionRegistry()
    first = established_session(codec)
    second = established_session(codec)

    await registry.register("web-01", first)
    superseded = await registry.register("web-01", second)

    assert superseded is first
    assert first.state is SessionState.CLOSED
    assert first.close_reason == SUPERSEDED_REASON
    assert second.state is SessionState.ESTABLISHED
    assert await registry.lookup("web-01") is second
    assert await registry.count() == 1


async def test_removing_superseded_session_is_noop(codec):
    registry = ConnectionRegistry()
    first = established_session(codec)
    second = established_session(codec)
    await registry.register("web-01", first)
    await registry.register("web-01", second)

    assert await registry.remove("web-01", first) is False
    assert await registry.lookup("web-01") is second

    assert await registry.remove("web-01", second) is True
    assert await registry.lookup("web-01") is None
    assert await registry.remove("web-01", second) is False


async def test_connected_agents_listing(codec):
    registry = ConnectionRegistry()
    await registry.register("web-01", established_session(codec, "web-01"))
    await registry.register("db-01", established_session(codec, "db-01"))

    agents = {agent["agent_id"]: agent for agent in await registry.connected_agents()}
    assert set(agents) == {"web-01", "db-01"}
    assert agents["web-01"]["state"] == "established"
    assert agents["web-01"]["capabilities"] == ["batch"]
    assert agents["web-01"]["remote_address"] == "agent:50000"
    assert "registered_at" in agents["db-01"]


async def test_close_all(codec):
    registry = ConnectionRegistry()
    sessions = [established_session(codec, f"agent-{i}") for i in range(3)]
    for session in sessions:
        await registry.register(session.identity, session)

    await registry.close_all()

    assert await registry.count() == 0
    assert all(session.state is SessionState.CLOSED for session in sessions)
