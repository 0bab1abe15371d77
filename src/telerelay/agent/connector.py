"""WebSocket connection to the telerelay server."""

import logging
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..exceptions import ConnectError, TransportClosed
from ..protocol.codec import HEADER_LEN, MAX_PAYLOAD_SIZE

logger = logging.getLogger(__name__)

# Frames are sent as single binary websocket messages
MAX_MESSAGE_SIZE = HEADER_LEN + MAX_PAYLOAD_SIZE


class WebSocketConnection:
    """Byte-message connection over a websockets client protocol."""

    def __init__(self, websocket):
        self.websocket = websocket
        remote = getattr(websocket, "remote_address", None)
        self.remote_address: Optional[str] = f"{remote[0]}:{remote[1]}" if remote else None

    async def send_bytes(self, data: bytes) -> None:
        try:
            await self.websocket.send(data)
        except ConnectionClosed as e:
            raise TransportClosed(f"WebSocket closed: {e}") from e

    async def recv_bytes(self) -> bytes:
        try:
            message = await self.websocket.recv()
        except ConnectionClosed as e:
            raise TransportClosed(f"WebSocket closed: {e}") from e
        if isinstance(message, str):
            # Text frames are never produced by a telerelay server
            return message.encode("utf-8")
        return message

    async def close(self) -> None:
        await self.websocket.close()


async def connect_websocket(endpoint: str) -> WebSocketConnection:
    """
    Open a websocket to the server endpoint (ws:// or wss://).

    Raises:
        ConnectError: Invalid URI or the server refused the upgrade
        OSError: Network level failure
    """
    try:
        websocket = await websockets.connect(
            endpoint,
            max_size=MAX_MESSAGE_SIZE,
            ping_interval=30,
            ping_timeout=10,
        )
    except InvalidURI as e:
        raise ConnectError(f"Invalid endpoint {endpoint}: {e}") from e
    except InvalidHandshake as e:
        raise ConnectError(f"WebSocket upgrade refused by {endpoint}: {e}") from e

    logger.debug(f"WebSocket connected to {endpoint}")
    return WebSocketConnection(websocket)
