# src/telerelay/exceptions.py
"""
telerelay Exceptions
"""
from typing import Optional


class TelerelayError(Exception):
    """Base exception for telerelay"""

    pass


class ConfigError(TelerelayError):
    """Configuration could not be resolved (fatal at startup)"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ConnectError(TelerelayError):
    """Session could not be established"""

    pass


class HandshakeRejected(ConnectError):
    """Server answered the handshake with a rejection"""

    def __init__(self, reason: str):
        super().__init__(f"Handshake rejected: {reason}")
        self.reason = reason


class SendError(TelerelayError):
    """Message could not be delivered on the current session"""

    pass


class TransportClosed(TelerelayError):
    """Underlying connection was closed by the peer or the network"""

    pass


class ProtocolError(TelerelayError):
    """Unknown or malformed message (fatal to the session)"""

    pass


class CollectError(TelerelayError):
    """A collection task failed to produce a sample"""

    def __init__(self, message: str, source_name: Optional[str] = None):
        super().__init__(message)
        self.source_name = source_name


class ValidationError(TelerelayError):
    """Batch rejected at the ingestion boundary"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SinkError(TelerelayError):
    """Forwarding to a sink failed after all retries"""

    def __init__(self, message: str, sink: Optional[str] = None):
        super().__init__(message)
        self.sink = sink
