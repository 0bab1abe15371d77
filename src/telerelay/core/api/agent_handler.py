"""
Agent Session Handler

Runs one agent session per websocket connection: handshake, registration,
heartbeat watchdog, batch ingestion and teardown.
"""
import asyncio
from typing import Optional

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ...exceptions import (
    ConnectError,
    HandshakeRejected,
    ProtocolError,
    SendError,
    SinkError,
    TransportClosed,
    ValidationError,
)
from ...protocol.codec import FrameCodec
from ...protocol.message_types import (
    AckMessage,
    BatchMessage,
    BatchRejectMessage,
    CloseMessage,
    HandshakeRequest,
    WireMessage,
)
from ...protocol.session import Session
from ...protocol.transport import Connection
from ..config import ServerConfig
from ..ingestion import IngestionPipeline
from ..registry import ConnectionRegistry

logger = structlog.get_logger()


class FastAPIWebSocketConnection:
    """Byte-message connection over an accepted FastAPI websocket"""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        client = websocket.client
        self.remote_address: Optional[str] = f"{client.host}:{client.port}" if client else None

    async def send_bytes(self, data: bytes) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            raise TransportClosed("WebSocket is not connected")
        try:
            await self.websocket.send_bytes(data)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise TransportClosed(f"WebSocket send failed: {e}") from e

    async def recv_bytes(self) -> bytes:
        try:
            message = await self.websocket.receive()
        except RuntimeError as e:
            raise TransportClosed(f"WebSocket receive failed: {e}") from e

        if message["type"] == "websocket.disconnect":
            raise TransportClosed(f"WebSocket disconnected (code {message.get('code')})")
        if message.get("bytes") is not None:
            return message["bytes"]
        return (message.get("text") or "").encode("utf-8")

    async def close(self) -> None:
        if (self.websocket.application_state == WebSocketState.DISCONNECTED
                or self.websocket.client_state == WebSocketState.DISCONNECTED):
            return
        try:
            await self.websocket.close()
        except RuntimeError as e:
            raise TransportClosed(f"WebSocket close failed: {e}") from e


class AgentSessionHandler:
    """Serves agent sessions against the registry and the ingestion pipeline"""

    def __init__(
        self,
        config: ServerConfig,
        registry: ConnectionRegistry,
        ingestion: IngestionPipeline,
        codec: Optional[FrameCodec] = None,
    ):
        self.config = config
        self.registry = registry
        self.ingestion = ingestion
        self.codec = codec or FrameCodec(shared_key=config.shared_key, compress=config.compress)

    def authorize(self, request: HandshakeRequest) -> Optional[str]:
        """Return a rejection reason, or None to accept the agent"""
        allowed = self.config.allowed_agents
        if allowed is not None and request.agent_identity not in allowed:
            return f"Agent '{request.agent_identity}' is not allowed"
        return None

    async def handle(self, connection: Connection) -> None:
        """Serve one agent connection until it closes"""
        try:
            session = await Session.accept(
                connection,
                codec=self.codec,
                handshake_timeout=self.config.session_timeout,
                authorize=self.authorize,
            )
        except HandshakeRejected as e:
            logger.warning("Agent handshake rejected",
                           remote=connection.remote_address, reason=e.reason)
            return
        except ConnectError as e:
            logger.info("Agent connection dropped before handshake",
                        remote=connection.remote_address, error=str(e))
            return
        except ProtocolError as e:
            logger.warning("Invalid handshake from agent",
                           remote=connection.remote_address, error=str(e))
            return

        identity = session.identity
        logger.info("Agent connected",
                    agent_id=identity,
                    session_id=session.session_id,
                    remote=connection.remote_address,
                    capabilities=session.capabilities)

        await self.registry.register(identity, session)
        session.start_watchdog(self.config.max_missed_heartbeats, timeout_cap=self.config.session_timeout)

        # The read loop keeps consuming heartbeats while a batch waits on slow sinks
        batches: asyncio.Queue = asyncio.Queue()
        worker = asyncio.create_task(
            self._ingest_batches(session, batches), name=f"ingest:{session.session_id}"
        )
        try:
            async for message in session.receive():
                if isinstance(message, BatchMessage):
                    batches.put_nowait(message)
                else:
                    self._dispatch(session, message)
        except ProtocolError as e:
            logger.warning("Protocol error from agent", agent_id=identity, error=str(e))
        finally:
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
            await self.registry.remove(identity, session)
            await session.close("session ended")
            logger.info("Agent disconnected",
                        agent_id=identity,
                        session_id=session.session_id,
                        reason=session.close_reason)

    def _dispatch(self, session: Session, message: WireMessage) -> None:
        if isinstance(message, CloseMessage):
            logger.debug("Agent closing session", agent_id=session.identity, reason=message.reason)
        else:
            logger.warning("Unexpected message from agent",
                           agent_id=session.identity, message_type=type(message).__name__)

    async def _ingest_batches(self, session: Session, batches: asyncio.Queue) -> None:
        """Answer queued batches one at a time, in arrival order"""
        while True:
            batch = await batches.get()
            await self._handle_batch(session, batch)

    async def _handle_batch(self, session: Session, batch: BatchMessage) -> None:
        reply: WireMessage
        try:
            reply = await self.ingestion.ingest(session.identity, batch)
        except ValidationError as e:
            reply = BatchRejectMessage(sequence=batch.sequence, reason=str(e), retryable=False)
        except SinkError as e:
            logger.error("Batch not forwarded, asking agent to redeliver",
                         agent_id=session.identity, sequence=batch.sequence, error=str(e))
            reply = BatchRejectMessage(sequence=batch.sequence, reason=str(e), retryable=True)

        try:
            await session.send(reply)
        except SendError as e:
            kind = "ACK" if isinstance(reply, AckMessage) else "BATCH_REJECT"
            logger.warning(f"Could not send {kind}", agent_id=session.identity, error=str(e))


async def handle_agent_websocket(websocket: WebSocket, handler: AgentSessionHandler) -> None:
    """Accept the websocket upgrade and run the agent session over it"""
    await websocket.accept()
    await handler.handle(FastAPIWebSocketConnection(websocket))
