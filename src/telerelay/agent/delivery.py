"""
Delivery Manager for telerelay Agent

Drains the outbound queue into numbered batches and delivers them over one
Transport Session at a time, reconnecting with backoff when the session is
lost.

    IDLE -> CONNECTING -> CONNECTED -> BACKING_OFF -> CONNECTING -> ...
                 \\             \\            \\
                  +-------------+------------+--> STOPPED   (stop() requested)

Delivery is stop-and-wait: a batch stays pending, with its sequence number,
until the server acknowledges it. A batch that could not be delivered is
resent first on the next session; the server's high-water mark makes the
resend idempotent.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Tuple

from pydantic_core import PydanticSerializationError

from ..exceptions import ConnectError, HandshakeRejected, ProtocolError, SendError
from ..protocol.codec import FrameCodec
from ..protocol.message_types import (
    AckMessage,
    BatchMessage,
    BatchRejectMessage,
    CloseMessage,
    WireMessage,
)
from ..protocol.session import Session
from ..protocol.transport import ConnectFn
from .backoff import ExponentialBackoff
from .buffer import SampleQueue
from .config import AgentConfig
from .connector import connect_websocket

logger = logging.getLogger(__name__)

AGENT_CAPABILITIES = ["batch", "heartbeat", "batch_reject"]

_INTERRUPTED = object()


class DeliveryState(str, Enum):
    """Delivery loop states"""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKING_OFF = "backing_off"
    STOPPED = "stopped"


class DeliveryManager:
    """Owns the agent's session and the batch sequence counter"""

    def __init__(
        self,
        config: AgentConfig,
        queue: SampleQueue,
        *,
        connect: ConnectFn = connect_websocket,
        codec: Optional[FrameCodec] = None,
        backoff: Optional[ExponentialBackoff] = None,
    ):
        self.config = config
        self.queue = queue
        self.connect = connect
        self.codec = codec or FrameCodec(shared_key=config.shared_key, compress=config.compress)
        self.backoff = backoff or ExponentialBackoff(config.reconnect_backoff)

        self.state = DeliveryState.IDLE
        self.session: Optional[Session] = None

        self._next_sequence = 1
        self._pending: Optional[BatchMessage] = None
        self._ack_waiter: Optional[Tuple[int, asyncio.Future]] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        # Counters
        self.connects = 0
        self.batches_sent = 0
        self.batches_acked = 0
        self.duplicate_acks = 0
        self.batches_rejected = 0
        self.samples_delivered = 0
        self.samples_rejected = 0
        self.send_failures = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start the delivery loop in a background task"""
        if self._run_task and not self._run_task.done():
            return self._run_task
        self._run_task = asyncio.create_task(self.run(), name="delivery")
        return self._run_task

    async def stop(self, timeout: float = 10.0) -> None:
        """
        Stop delivering

        When connected, the pending batch and the queued samples are flushed
        first (bounded by timeout), then the session is closed.
        """
        self._stop_event.set()
        if not self._run_task:
            self._set_state(DeliveryState.STOPPED)
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._run_task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Delivery did not stop within {timeout:.1f}s, cancelling")
            self._run_task.cancel()
            await asyncio.gather(self._run_task, return_exceptions=True)
            await self._drop_session("agent stopping")
            self._set_state(DeliveryState.STOPPED)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        """Explicit reconnect/delivery state loop; returns once STOPPED"""
        self._set_state(DeliveryState.CONNECTING)
        try:
            while self.state is not DeliveryState.STOPPED:
                if self.state is DeliveryState.CONNECTING:
                    await self._connect()
                elif self.state is DeliveryState.CONNECTED:
                    await self._deliver()
                elif self.state is DeliveryState.BACKING_OFF:
                    await self._back_off()
                else:
                    self._set_state(DeliveryState.CONNECTING)
        finally:
            if self.session is not None:
                await self._drop_session("agent stopping")
            self.state = DeliveryState.STOPPED
            unsent = len(self.queue) + (len(self._pending.samples) if self._pending else 0)
            if unsent:
                logger.warning(f"Delivery stopped with {unsent} undelivered samples")

    def _set_state(self, new_state: DeliveryState) -> None:
        if new_state is not self.state:
            logger.debug(f"Delivery state: {self.state.value} -> {new_state.value}")
            self.state = new_state

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        if self.stopping:
            self._set_state(DeliveryState.STOPPED)
            return

        try:
            session = await self._until_stopped(
                Session.open(
                    self.config.agent_identity,
                    self.config.endpoint,
                    connect=self.connect,
                    codec=self.codec,
                    capabilities=AGENT_CAPABILITIES,
                    heartbeat_interval=self.config.heartbeat_interval,
                    handshake_timeout=self.config.handshake_timeout,
                )
            )
        except HandshakeRejected as e:
            logger.error(f"Server rejected agent '{self.config.agent_identity}': {e.reason}")
            self._set_state(DeliveryState.BACKING_OFF)
            return
        except ConnectError as e:
            logger.warning(f"Connection to {self.config.endpoint} failed: {e}")
            self._set_state(DeliveryState.BACKING_OFF)
            return

        if session is _INTERRUPTED:
            self._set_state(DeliveryState.STOPPED)
            return

        self.session = session
        self.connects += 1
        self.backoff.reset()
        session.start_heartbeats()
        self._reader_task = asyncio.create_task(self._read_replies(session), name=f"replies:{session.session_id}")
        logger.info(f"Connected to {self.config.endpoint} (session {session.session_id})")
        self._set_state(DeliveryState.CONNECTED)

    async def _deliver(self) -> None:
        try:
            while True:
                if self.stopping:
                    await self._flush()
                    await self._drop_session("agent stopping")
                    self._set_state(DeliveryState.STOPPED)
                    return

                if self._pending is None and not await self._form_batch():
                    continue

                await self._send_pending()
        except SendError as e:
            self.send_failures += 1
            logger.warning(f"Delivery failed, will reconnect: {e}")
            await self._drop_session(f"delivery failed: {e}")
            if self.stopping:
                self._set_state(DeliveryState.STOPPED)
            else:
                self._set_state(DeliveryState.BACKING_OFF)

    async def _back_off(self) -> None:
        delay = self.backoff.next_delay()
        logger.info(f"Reconnecting in {delay:.2f}s (attempt {self.backoff.attempts})")
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            self._set_state(DeliveryState.CONNECTING)
            return
        self._set_state(DeliveryState.STOPPED)

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    async def _form_batch(self) -> bool:
        """
        Wait for the batch cadence (or a full batch) and take a batch off the queue

        Returns:
            True when a new batch is pending

        Raises:
            SendError: The session ended while waiting
        """
        session = self.session
        result = await self._until_stopped(
            self.queue.wait_for(self.config.max_batch_size, self.config.batch_interval),
            session.wait_closed(),
        )
        if result is _INTERRUPTED and not self.stopping:
            raise SendError(f"Session {session.session_id} ended: {session.close_reason}")

        samples = self.queue.drain(self.config.max_batch_size)
        if not samples:
            return False
        self._pending = BatchMessage(sequence=self._next_sequence, samples=samples)
        self._next_sequence += 1
        return True

    async def _send_pending(self) -> None:
        """
        Send the pending batch and wait for the server's reply

        Raises:
            SendError: Write failed, no reply within ack_timeout, session lost,
                or the server asked for a later redelivery
        """
        batch = self._pending
        session = self.session
        if session is None:
            raise SendError("No active session")

        waiter = asyncio.get_running_loop().create_future()
        self._ack_waiter = (batch.sequence, waiter)
        try:
            try:
                await session.send_batch(batch)
            except (ProtocolError, PydanticSerializationError) as e:
                # Unencodable batches are dropped like a non-retryable reject
                self._drop_pending(f"cannot be encoded: {e}")
                return
            self.batches_sent += 1
            try:
                reply = await asyncio.wait_for(waiter, timeout=self.config.ack_timeout)
            except asyncio.TimeoutError:
                raise SendError(f"No ACK for batch {batch.sequence} within {self.config.ack_timeout:.1f}s")
        finally:
            self._ack_waiter = None

        if isinstance(reply, AckMessage):
            self.batches_acked += 1
            if reply.duplicate:
                self.duplicate_acks += 1
                logger.debug(f"Batch {batch.sequence} was already ingested")
            else:
                self.samples_delivered += len(batch.samples)
            self._pending = None
            return

        if reply.retryable:
            raise SendError(f"Server deferred batch {batch.sequence}: {reply.reason}")

        self._drop_pending(f"rejected by server: {reply.reason}")

    def _drop_pending(self, reason: str) -> None:
        batch, self._pending = self._pending, None
        self.batches_rejected += 1
        self.samples_rejected += len(batch.samples)
        logger.warning(f"Batch {batch.sequence} ({len(batch.samples)} samples) dropped, {reason}")

    async def _flush(self) -> None:
        """Deliver the pending batch and everything still queued"""
        if self._pending is None and not len(self.queue):
            return
        logger.info(f"Flushing {len(self.queue)} queued samples before stopping")
        while True:
            if self._pending is None:
                samples = self.queue.drain(self.config.max_batch_size)
                if not samples:
                    return
                self._pending = BatchMessage(sequence=self._next_sequence, samples=samples)
                self._next_sequence += 1
            await self._send_pending()

    # ------------------------------------------------------------------
    # Session plumbing
    # ------------------------------------------------------------------

    async def _read_replies(self, session: Session) -> None:
        """Route ACK / BATCH_REJECT replies to the batch waiting for them"""
        try:
            async for message in session.receive():
                self._dispatch(message)
        except ProtocolError as e:
            logger.error(f"Protocol error from server: {e}")
        finally:
            if self._ack_waiter is not None:
                _, waiter = self._ack_waiter
                if not waiter.done():
                    waiter.set_exception(SendError(f"Session {session.session_id} ended: {session.close_reason}"))

    def _dispatch(self, message: WireMessage) -> None:
        if isinstance(message, (AckMessage, BatchRejectMessage)):
            if self._ack_waiter is None:
                logger.debug(f"Ignoring late reply for batch {message.sequence}")
                return
            sequence, waiter = self._ack_waiter
            if message.sequence != sequence:
                logger.debug(f"Ignoring reply for batch {message.sequence}, waiting for {sequence}")
                return
            if not waiter.done():
                waiter.set_result(message)
        elif isinstance(message, CloseMessage):
            logger.info(f"Server closed the session: {message.reason or 'no reason given'}")
        else:
            logger.warning(f"Unexpected {type(message).__name__} from server")

    async def _drop_session(self, reason: str) -> None:
        session, self.session = self.session, None
        reader, self._reader_task = self._reader_task, None
        if session is not None:
            await session.close(reason)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _until_stopped(self, aw: Awaitable, *also: Awaitable) -> Any:
        """
        Await aw unless stop() (or one of the also awaitables) finishes first

        Returns:
            The result of aw, or _INTERRUPTED
        """
        task = asyncio.ensure_future(aw)
        waiters = [asyncio.ensure_future(self._stop_event.wait())]
        waiters.extend(asyncio.ensure_future(other) for other in also)
        try:
            done, _ = await asyncio.wait([task, *waiters], return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return _INTERRUPTED

    def stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "session_id": self.session.session_id if self.session else None,
            "next_sequence": self._next_sequence,
            "pending_sequence": self._pending.sequence if self._pending else None,
            "connects": self.connects,
            "batches_sent": self.batches_sent,
            "batches_acked": self.batches_acked,
            "duplicate_acks": self.duplicate_acks,
            "batches_rejected": self.batches_rejected,
            "samples_delivered": self.samples_delivered,
            "samples_rejected": self.samples_rejected,
            "send_failures": self.send_failures,
        }
