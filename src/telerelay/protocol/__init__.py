"""
telerelay wire protocol: message types, frame codec and sessions
"""

from .codec import FrameCodec
from .message_types import (
    PROTOCOL_VERSION,
    AckMessage,
    BatchMessage,
    BatchRejectMessage,
    CloseMessage,
    HandshakeRequest,
    HandshakeResponse,
    Heartbeat,
    MessageType,
    Sample,
)
from .session import Session, SessionState

__all__ = [
    "PROTOCOL_VERSION",
    "AckMessage",
    "BatchMessage",
    "BatchRejectMessage",
    "CloseMessage",
    "FrameCodec",
    "HandshakeRequest",
    "HandshakeResponse",
    "Heartbeat",
    "MessageType",
    "Sample",
    "Session",
    "SessionState",
]
