# src/telerelay/protocol/transport.py
"""
Byte-message transport seam.

A Session only needs something that can send and receive whole frames and be
closed. The agent plugs a websocket client in here, the server plugs the
FastAPI websocket of the incoming request.
"""
from typing import Awaitable, Callable, Optional, Protocol


class Connection(Protocol):
    """
    One bidirectional message-oriented connection

    Implementations raise TransportClosed (or OSError) once the peer or the
    network is gone.
    """

    remote_address: Optional[str]

    async def send_bytes(self, data: bytes) -> None:
        ...

    async def recv_bytes(self) -> bytes:
        ...

    async def close(self) -> None:
        ...


ConnectFn = Callable[[str], Awaitable[Connection]]
