"""
Ingestion Pipeline

Validates incoming batches, deduplicates them against a per-agent
high-water mark (HWM) and forwards new samples to the sinks.

Delivery is at-least-once: the HWM only advances after every sink accepted
the batch, so a batch that failed downstream is redelivered by the agent.
"""
import asyncio
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Sequence

import structlog
from pydantic import BaseModel, Field

from ..exceptions import SinkError, ValidationError
from ..protocol.message_types import AckMessage, BatchMessage, SampleValidator
from .sinks import Sink

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LossEvent(BaseModel):
    """A gap in the sequence numbers received from one agent"""
    identity: str
    expected_sequence: int
    received_sequence: int
    missing: int
    detected_at: datetime = Field(default_factory=_utcnow)


class AgentIngestState(BaseModel):
    """Per-agent ingestion bookkeeping"""
    identity: str
    high_water_mark: int = 0
    batches: int = 0
    samples: int = 0
    duplicates: int = 0
    losses: int = 0
    last_batch_at: Optional[datetime] = None


class IngestionPipeline:
    """Validate, deduplicate and route batches to sinks"""

    def __init__(
        self,
        sinks: Sequence[Sink],
        *,
        max_batch_samples: int = 10000,
        retry_attempts: int = 3,
        retry_delay: float = 0.2,
        loss_history_size: int = 100,
    ):
        self.sinks = list(sinks)
        self.max_batch_samples = max_batch_samples
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay

        self._agents: Dict[str, AgentIngestState] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._losses: Dict[str, Deque[LossEvent]] = defaultdict(lambda: deque(maxlen=loss_history_size))

        # Counters
        self.batches_accepted = 0
        self.batches_duplicate = 0
        self.batches_rejected = 0
        self.batches_failed = 0
        self.samples_forwarded = 0

    def validate(self, batch: BatchMessage) -> None:
        """
        Check a batch at the ingestion boundary

        Raises:
            ValidationError: Empty or oversized batch, or invalid samples
        """
        if not batch.samples:
            raise ValidationError(f"Batch {batch.sequence} contains no samples", field="samples")
        if len(batch.samples) > self.max_batch_samples:
            raise ValidationError(
                f"Batch {batch.sequence} has {len(batch.samples)} samples (limit {self.max_batch_samples})",
                field="samples",
            )
        for index, sample in enumerate(batch.samples):
            errors = SampleValidator.validate_sample(sample)
            if errors:
                raise ValidationError(f"samples[{index}]: {'; '.join(errors)}", field=f"samples[{index}]")

    async def ingest(self, identity: str, batch: BatchMessage) -> AckMessage:
        """
        Ingest one batch from an agent

        Returns:
            ACK for the batch; duplicate=True when it was ingested before

        Raises:
            ValidationError: Batch rejected, nothing was forwarded
            SinkError: A sink kept failing; the batch must be redelivered
        """
        try:
            self.validate(batch)
        except ValidationError as e:
            self.batches_rejected += 1
            logger.warning("Batch rejected", agent_id=identity, sequence=batch.sequence, error=str(e))
            raise

        async with self._locks[identity]:
            state = self._agents.get(identity)
            if state is None:
                state = self._agents[identity] = AgentIngestState(identity=identity)

            if batch.sequence <= state.high_water_mark:
                self.batches_duplicate += 1
                state.duplicates += 1
                logger.debug("Duplicate batch acknowledged",
                             agent_id=identity,
                             sequence=batch.sequence,
                             high_water_mark=state.high_water_mark)
                return AckMessage(sequence=batch.sequence, duplicate=True)

            try:
                await self._forward(identity, batch)
            except SinkError:
                self.batches_failed += 1
                raise

            expected = state.high_water_mark + 1
            if batch.sequence > expected:
                self._record_loss(state, expected, batch.sequence)

            state.high_water_mark = batch.sequence
            state.batches += 1
            state.samples += len(batch.samples)
            state.last_batch_at = _utcnow()

        self.batches_accepted += 1
        self.samples_forwarded += len(batch.samples)
        return AckMessage(sequence=batch.sequence)

    async def _forward(self, identity: str, batch: BatchMessage) -> None:
        for sink in self.sinks:
            for attempt in range(1, self.retry_attempts + 1):
                try:
                    await sink.send(identity, batch)
                    break
                except Exception as e:
                    logger.warning("Sink delivery failed",
                                   sink=sink.name,
                                   agent_id=identity,
                                   sequence=batch.sequence,
                                   attempt=attempt,
                                   error=str(e))
                    if attempt == self.retry_attempts:
                        raise SinkError(
                            f"Sink '{sink.name}' failed after {attempt} attempts: {e}", sink=sink.name
                        ) from e
                    await asyncio.sleep(self.retry_delay)

    def _record_loss(self, state: AgentIngestState, expected: int, received: int) -> None:
        event = LossEvent(
            identity=state.identity,
            expected_sequence=expected,
            received_sequence=received,
            missing=received - expected,
        )
        self._losses[state.identity].append(event)
        state.losses += 1
        logger.warning("Sequence gap detected",
                       agent_id=state.identity,
                       expected=expected,
                       received=received,
                       missing=event.missing)

    def high_water_mark(self, identity: str) -> int:
        state = self._agents.get(identity)
        return state.high_water_mark if state else 0

    def agent_state(self, identity: str) -> Optional[AgentIngestState]:
        return self._agents.get(identity)

    def agent_states(self) -> List[AgentIngestState]:
        return list(self._agents.values())

    def loss_events(self, identity: str) -> List[LossEvent]:
        return list(self._losses.get(identity, ()))

    def stats(self) -> Dict[str, Any]:
        return {
            "batches_accepted": self.batches_accepted,
            "batches_duplicate": self.batches_duplicate,
            "batches_rejected": self.batches_rejected,
            "batches_failed": self.batches_failed,
            "samples_forwarded": self.samples_forwarded,
            "agents_seen": len(self._agents),
        }

    async def close(self) -> None:
        """Close every sink"""
        for sink in self.sinks:
            try:
                await sink.close()
            except Exception as e:
                logger.warning("Error closing sink", sink=sink.name, error=str(e))
