# src/telerelay/protocol/message_types.py
"""
Wire Message Types

Typed messages exchanged between agent and server.
Each message class is bound to a one-byte type tag used by the frame codec.
"""
import math
import time
from enum import IntEnum
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field


PROTOCOL_VERSION = 1

# Shared field descriptions (avoid duplicated literals)
AGENT_ID_DESC = "Agent identifier"
SEQUENCE_DESC = "Batch sequence number"


class MessageType(IntEnum):
    """Wire message type tags"""
    HANDSHAKE_REQUEST = 1
    HANDSHAKE_RESPONSE = 2
    HEARTBEAT = 3
    BATCH = 4
    ACK = 5
    CLOSE = 6
    BATCH_REJECT = 7


class WireMessage(BaseModel):
    """Base wire message"""
    model_config = ConfigDict(frozen=True, extra="forbid")


class Sample(BaseModel):
    """A single typed measurement produced by a collector"""
    model_config = ConfigDict(frozen=True)

    source_name: str = Field(..., description="Name of the collector that produced the sample")
    timestamp: float = Field(default_factory=time.time, allow_inf_nan=False, description="Unix epoch seconds")
    value: Any = Field(None, description="Measurement payload (any JSON value)")


class HandshakeRequest(WireMessage):
    """Agent -> server: first message on every connection"""
    agent_identity: str = Field(..., min_length=1, description=AGENT_ID_DESC)
    protocol_version: int = Field(default=PROTOCOL_VERSION, description="Protocol version spoken by the agent")
    capabilities: List[str] = Field(default_factory=list, description="Agent capabilities")
    heartbeat_interval_ms: int = Field(default=5000, gt=0, description="Interval between agent heartbeats")


class HandshakeResponse(WireMessage):
    """Server -> agent: accept or reject"""
    accepted: bool = Field(..., description="Whether the session was accepted")
    reason: Optional[str] = Field(None, description="Rejection reason")
    session_id: Optional[str] = Field(None, description="Server-assigned session identifier")


class Heartbeat(WireMessage):
    """Agent keepalive"""
    sent_at: float = Field(default_factory=time.time, description="Send time (epoch seconds)")


class BatchMessage(WireMessage):
    """Ordered group of samples with a per-agent sequence number"""
    sequence: int = Field(..., ge=1, description=SEQUENCE_DESC)
    samples: List[Sample] = Field(default_factory=list, description="Samples in production order")


class AckMessage(WireMessage):
    """Server -> agent: batch ingested (or already ingested)"""
    sequence: int = Field(..., ge=1, description=SEQUENCE_DESC)
    duplicate: bool = Field(default=False, description="Batch was already ingested earlier")


class BatchRejectMessage(WireMessage):
    """Server -> agent: batch not ingested"""
    sequence: int = Field(..., ge=1, description=SEQUENCE_DESC)
    reason: str = Field(..., description="Why the batch was rejected")
    retryable: bool = Field(default=False, description="Agent should redeliver the batch later")


class CloseMessage(WireMessage):
    """Either side: graceful session close"""
    reason: Optional[str] = Field(None, description="Close reason")


MESSAGE_CLASSES: Dict[MessageType, Type[WireMessage]] = {
    MessageType.HANDSHAKE_REQUEST: HandshakeRequest,
    MessageType.HANDSHAKE_RESPONSE: HandshakeResponse,
    MessageType.HEARTBEAT: Heartbeat,
    MessageType.BATCH: BatchMessage,
    MessageType.ACK: AckMessage,
    MessageType.CLOSE: CloseMessage,
    MessageType.BATCH_REJECT: BatchRejectMessage,
}

MESSAGE_TAGS: Dict[Type[WireMessage], MessageType] = {cls: tag for tag, cls in MESSAGE_CLASSES.items()}


def message_type_of(message: WireMessage) -> MessageType:
    """Return the wire tag for a message instance"""
    try:
        return MESSAGE_TAGS[type(message)]
    except KeyError:
        raise TypeError(f"Not a wire message: {type(message).__name__}")


class SampleValidator:
    """Field-level checks applied to samples at the ingestion boundary"""

    @staticmethod
    def validate_sample(sample: Sample) -> List[str]:
        """
        Validate one sample

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        if not sample.source_name or not sample.source_name.strip():
            errors.append("Sample has an empty source_name")
        if not math.isfinite(sample.timestamp) or sample.timestamp <= 0:
            errors.append(f"Sample '{sample.source_name}' has an invalid timestamp: {sample.timestamp}")
        return errors
