# src/telerelay/protocol/session.py
"""
Transport Session

One authenticated logical channel between an agent and the server.

    CONNECTING -> ESTABLISHED -> CLOSING -> CLOSED
         \\             \\            \\
          +-------------+------------+--> FAILED   (unrecoverable I/O error)

A Session is never reused: reconnecting means opening a new one.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..exceptions import (
    ConnectError,
    HandshakeRejected,
    ProtocolError,
    SendError,
    TransportClosed,
)
from .codec import FrameCodec
from .message_types import (
    PROTOCOL_VERSION,
    BatchMessage,
    CloseMessage,
    HandshakeRequest,
    HandshakeResponse,
    Heartbeat,
    WireMessage,
)
from .transport import ConnectFn, Connection

logger = logging.getLogger(__name__)

# Upper bound for the best-effort CLOSE notification
CLOSE_NOTIFY_TIMEOUT = 1.0

Authorizer = Callable[[HandshakeRequest], Optional[str]]


class SessionState(str, Enum):
    """Session lifecycle states"""
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})

_TRANSITIONS = {
    SessionState.CONNECTING: {SessionState.ESTABLISHED, SessionState.CLOSING, SessionState.FAILED},
    SessionState.ESTABLISHED: {SessionState.CLOSING, SessionState.FAILED},
    SessionState.CLOSING: {SessionState.CLOSED, SessionState.FAILED},
    SessionState.CLOSED: set(),
    SessionState.FAILED: set(),
}


async def _read_message(connection: Connection, codec: FrameCodec) -> WireMessage:
    """Read and decode the next frame from a connection"""
    frame = await connection.recv_bytes()
    return codec.decode(frame)


async def _close_quietly(connection: Connection) -> None:
    """Close a connection whose peer may already be gone"""
    try:
        await connection.close()
    except (TransportClosed, OSError) as e:
        logger.debug(f"Connection close raised: {e}")


class Session:
    """
    Framed, heartbeat-supervised session over one Connection

    Use Session.open() on the agent side and Session.accept() on the server
    side; both return an ESTABLISHED session or raise.
    """

    def __init__(
        self,
        connection: Connection,
        identity: str,
        codec: FrameCodec,
        *,
        session_id: Optional[str] = None,
        capabilities: Optional[List[str]] = None,
        heartbeat_interval: float = 5.0,
    ):
        self.connection = connection
        self.identity = identity
        self.codec = codec
        self.session_id = session_id or uuid.uuid4().hex
        self.capabilities = list(capabilities or [])
        self.heartbeat_interval = heartbeat_interval
        self.created_at = datetime.now(timezone.utc)
        self.close_reason: Optional[str] = None
        self.missed_heartbeats = 0

        self._state = SessionState.CONNECTING
        self._send_lock = asyncio.Lock()
        self._closing = False
        self._closed = asyncio.Event()
        self._peer_closed = False
        self._receive_started = False
        self._pending_recv: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._last_heartbeat = time.monotonic()

    # ------------------------------------------------------------------
    # Establishment
    # ------------------------------------------------------------------

    @classmethod
    async def open(
        cls,
        identity: str,
        endpoint: str,
        *,
        connect: ConnectFn,
        codec: FrameCodec,
        capabilities: Optional[List[str]] = None,
        heartbeat_interval: float = 5.0,
        handshake_timeout: float = 10.0,
    ) -> "Session":
        """
        Connect to the server and perform the agent half of the handshake

        Raises:
            ConnectError: Endpoint unreachable, handshake timed out,
                malformed reply, or the server rejected the session
        """
        try:
            connection = await asyncio.wait_for(connect(endpoint), timeout=handshake_timeout)
        except asyncio.TimeoutError:
            raise ConnectError(f"Timed out connecting to {endpoint}")
        except (TransportClosed, OSError) as e:
            raise ConnectError(f"Cannot connect to {endpoint}: {e}") from e

        session = cls(
            connection,
            identity,
            codec,
            capabilities=capabilities,
            heartbeat_interval=heartbeat_interval,
        )
        try:
            await session._client_handshake(handshake_timeout)
        except HandshakeRejected:
            await session._shutdown(SessionState.CLOSED)
            raise
        except (ConnectError, asyncio.CancelledError):
            await session._shutdown(SessionState.FAILED)
            raise

        logger.info(f"Session {session.session_id} established with {endpoint}")
        return session

    async def _client_handshake(self, timeout: float) -> None:
        request = HandshakeRequest(
            agent_identity=self.identity,
            protocol_version=PROTOCOL_VERSION,
            capabilities=self.capabilities,
            heartbeat_interval_ms=int(self.heartbeat_interval * 1000),
        )
        try:
            await self._write(request)
            response = await asyncio.wait_for(self._read(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ConnectError(f"No handshake response within {timeout:.1f}s")
        except (TransportClosed, OSError) as e:
            raise ConnectError(f"Connection lost during handshake: {e}") from e
        except ProtocolError as e:
            raise ConnectError(f"Handshake failed: {e}") from e

        if not isinstance(response, HandshakeResponse):
            raise ConnectError(f"Expected HANDSHAKE_RESPONSE, got {type(response).__name__}")
        if not response.accepted:
            raise HandshakeRejected(response.reason or "unspecified")

        if response.session_id:
            self.session_id = response.session_id
        self._transition(SessionState.ESTABLISHED)

    @classmethod
    async def accept(
        cls,
        connection: Connection,
        *,
        codec: FrameCodec,
        handshake_timeout: float = 30.0,
        authorize: Optional[Authorizer] = None,
    ) -> "Session":
        """
        Perform the server half of the handshake on an incoming connection

        Args:
            connection: Freshly accepted connection
            codec: Frame codec shared with the agent
            handshake_timeout: Seconds to wait for the HANDSHAKE_REQUEST
            authorize: Optional callback returning a rejection reason or None

        Raises:
            ConnectError: No handshake received or the connection dropped
            HandshakeRejected: Version mismatch or refused by authorize()
            ProtocolError: First frame was malformed or not a handshake
        """
        try:
            request = await asyncio.wait_for(_read_message(connection, codec), timeout=handshake_timeout)
        except asyncio.TimeoutError:
            await _close_quietly(connection)
            raise ConnectError(f"No handshake received within {handshake_timeout:.1f}s")
        except (TransportClosed, OSError) as e:
            await _close_quietly(connection)
            raise ConnectError(f"Connection lost before handshake: {e}") from e
        except ProtocolError:
            await _close_quietly(connection)
            raise

        if not isinstance(request, HandshakeRequest):
            await _close_quietly(connection)
            raise ProtocolError(f"Expected HANDSHAKE_REQUEST, got {type(request).__name__}")

        session = cls(
            connection,
            request.agent_identity,
            codec,
            capabilities=request.capabilities,
            heartbeat_interval=request.heartbeat_interval_ms / 1000,
        )

        reason = None
        if request.protocol_version != PROTOCOL_VERSION:
            reason = f"Unsupported protocol version {request.protocol_version} (server speaks {PROTOCOL_VERSION})"
        elif authorize is not None:
            reason = authorize(request)

        try:
            if reason:
                await session._write(HandshakeResponse(accepted=False, reason=reason))
            else:
                await session._write(HandshakeResponse(accepted=True, session_id=session.session_id))
        except (TransportClosed, OSError) as e:
            await session._shutdown(SessionState.FAILED)
            raise ConnectError(f"Connection lost during handshake: {e}") from e

        if reason:
            session.close_reason = reason
            await session._shutdown(SessionState.CLOSED)
            raise HandshakeRejected(reason)

        session._transition(SessionState.ESTABLISHED)
        return session

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_established(self) -> bool:
        return self._state is SessionState.ESTABLISHED

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal session transition {self._state.value} -> {new_state.value}")
        logger.debug(f"Session {self.session_id}: {self._state.value} -> {new_state.value}")
        self._state = new_state
        if new_state is SessionState.ESTABLISHED:
            self._last_heartbeat = time.monotonic()

    async def wait_closed(self) -> None:
        """Wait until the session reached CLOSED or FAILED"""
        await self._closed.wait()

    def info(self) -> Dict[str, Any]:
        """Connection metadata for listings"""
        return {
            "session_id": self.session_id,
            "agent_id": self.identity,
            "state": self._state.value,
            "connected_at": self.created_at.isoformat(),
            "capabilities": list(self.capabilities),
            "remote_address": getattr(self.connection, "remote_address", None),
            "missed_heartbeats": self.missed_heartbeats,
        }

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    async def _write(self, message: WireMessage) -> None:
        frame = self.codec.encode(message)
        async with self._send_lock:
            await self.connection.send_bytes(frame)

    async def _read(self) -> WireMessage:
        return await _read_message(self.connection, self.codec)

    async def send(self, message: WireMessage) -> None:
        """
        Send one message on an established session

        Raises:
            SendError: Session not established or the write failed; a failed
                write moves the session to FAILED
        """
        if self._state is not SessionState.ESTABLISHED:
            raise SendError(f"Session {self.session_id} is {self._state.value}")
        try:
            await self._write(message)
        except (TransportClosed, OSError) as e:
            await self._fail(f"send failed: {e}")
            raise SendError(f"Send failed on session {self.session_id}: {e}") from e

    async def send_batch(self, batch: BatchMessage) -> None:
        """Send a batch of samples"""
        await self.send(batch)

    def receive(self) -> AsyncIterator[WireMessage]:
        """
        Lazy sequence of inbound control messages

        Heartbeats are consumed internally. The sequence ends when the session
        closes or the connection drops, and it cannot be restarted.

        Raises:
            RuntimeError: receive() was already called on this session
        """
        if self._receive_started:
            raise RuntimeError(f"receive() already consumed on session {self.session_id}")
        self._receive_started = True
        return self._receive_loop()

    async def _receive_loop(self) -> AsyncIterator[WireMessage]:
        while self._state is SessionState.ESTABLISHED:
            pending = asyncio.ensure_future(self._read())
            self._pending_recv = pending
            try:
                message = await pending
            except asyncio.CancelledError:
                # close() cancels the pending read; anything else is ours to propagate
                if pending.cancelled() and self._closing:
                    return
                raise
            except (TransportClosed, OSError) as e:
                await self._fail(f"connection lost: {e}")
                return
            except ProtocolError as e:
                logger.warning(f"Protocol error on session {self.session_id}: {e}")
                await self._fail(f"protocol error: {e}")
                raise
            finally:
                self._pending_recv = None

            if isinstance(message, Heartbeat):
                self._record_heartbeat()
                continue

            if isinstance(message, (HandshakeRequest, HandshakeResponse)):
                await self._fail("unexpected handshake on established session")
                raise ProtocolError(f"Unexpected {type(message).__name__} on established session")

            if isinstance(message, CloseMessage):
                self._peer_closed = True
                self.close_reason = message.reason or "closed by peer"
                yield message
                await self.close(self.close_reason)
                return

            yield message

    # ------------------------------------------------------------------
    # Heartbeats
    # ------------------------------------------------------------------

    def _record_heartbeat(self) -> None:
        self._last_heartbeat = time.monotonic()
        self.missed_heartbeats = 0

    def start_heartbeats(self) -> asyncio.Task:
        """Agent side: send a HEARTBEAT every heartbeat_interval"""
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name=f"heartbeat:{self.session_id}"
        )
        return self._heartbeat_task

    async def _heartbeat_loop(self) -> None:
        while self._state is SessionState.ESTABLISHED:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.send(Heartbeat())
            except SendError as e:
                logger.warning(f"Heartbeat failed: {e}")
                return

    def start_watchdog(self, max_missed: int, timeout_cap: Optional[float] = None) -> asyncio.Task:
        """
        Server side: close the session after max_missed silent heartbeat intervals

        Args:
            max_missed: Consecutive missed heartbeats tolerated
            timeout_cap: Optional upper bound (seconds) on the liveness window
        """
        window = self.heartbeat_interval * max_missed
        if timeout_cap is not None:
            window = min(window, timeout_cap)
        self._watchdog_task = asyncio.create_task(
            self._watchdog_loop(window, max_missed), name=f"watchdog:{self.session_id}"
        )
        return self._watchdog_task

    async def _watchdog_loop(self, window: float, max_missed: int) -> None:
        check_every = max(min(self.heartbeat_interval, window) / 4, 0.01)
        while self._state is SessionState.ESTABLISHED:
            await asyncio.sleep(check_every)
            silent_for = time.monotonic() - self._last_heartbeat
            self.missed_heartbeats = int(silent_for // self.heartbeat_interval)
            if silent_for >= window:
                logger.warning(
                    f"Session {self.session_id} ({self.identity}) missed {max_missed} heartbeats, closing"
                )
                await self.close(f"missed {max_missed} heartbeats")
                return

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self, reason: Optional[str] = None) -> None:
        """
        Close the session and release its I/O resources (idempotent)

        Sends a best-effort CLOSE to the peer, cancels the pending receive and
        the heartbeat/watchdog tasks, then closes the connection.
        """
        if self._state in TERMINAL_STATES:
            return
        if self._closing:
            await self._closed.wait()
            return

        self._closing = True
        notify = self._state is SessionState.ESTABLISHED and not self._peer_closed
        self._transition(SessionState.CLOSING)
        if self.close_reason is None:
            self.close_reason = reason or "closed"

        if notify:
            try:
                await asyncio.wait_for(self._write(CloseMessage(reason=reason)), timeout=CLOSE_NOTIFY_TIMEOUT)
            except (TransportClosed, OSError, asyncio.TimeoutError) as e:
                logger.debug(f"CLOSE notification not delivered: {e}")

        await self._release()
        self._transition(SessionState.CLOSED)
        self._closed.set()
        logger.info(f"Session {self.session_id} closed: {self.close_reason}")

    async def _fail(self, reason: str) -> None:
        if self._state in TERMINAL_STATES or self._closing:
            return
        self._closing = True
        self.close_reason = reason
        self._transition(SessionState.FAILED)
        await self._release()
        self._closed.set()
        logger.warning(f"Session {self.session_id} failed: {reason}")

    async def _shutdown(self, final_state: SessionState) -> None:
        """Tear down a session that never became established"""
        if self._state in TERMINAL_STATES:
            return
        self._closing = True
        if final_state is SessionState.CLOSED:
            self._transition(SessionState.CLOSING)
        self._transition(final_state)
        await self._release()
        self._closed.set()

    async def _release(self) -> None:
        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._pending_recv, self._heartbeat_task, self._watchdog_task)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await _close_quietly(self.connection)

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
