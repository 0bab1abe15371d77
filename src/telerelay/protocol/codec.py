# src/telerelay/protocol/codec.py
"""
Frame Codec

Length-prefixed, type-tagged binary frames:

    magic (4) | flags (1) | type (1) | length (4, big-endian) | payload

The payload is the JSON body of the message, optionally zlib-compressed and
optionally sealed with AES-256-GCM (12-byte nonce + ciphertext). The key is
the SHA-256 digest of the shared secret configured on both ends.
"""
import hashlib
import logging
import os
import struct
import zlib
from typing import Optional

import pydantic
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import ProtocolError
from .message_types import MESSAGE_CLASSES, MessageType, WireMessage, message_type_of

logger = logging.getLogger(__name__)

MAGIC = b"\x23\x33\x23\x33"
HEADER = struct.Struct(">4sBBI")
HEADER_LEN = HEADER.size
# magic + flags + type, authenticated as associated data
AAD_LEN = 6
NONCE_LEN = 12

FLAG_COMPRESSED = 0x01
FLAG_ENCRYPTED = 0x02

MAX_PAYLOAD_SIZE = 16 * 1024 * 1024
DEFAULT_COMPRESS_THRESHOLD = 256


def make_key(shared_key: str) -> bytes:
    """Derive the 32-byte AES key from a shared secret"""
    return hashlib.sha256(shared_key.encode("utf-8")).digest()


class FrameCodec:
    """Encode and decode wire messages to and from frames"""

    def __init__(
        self,
        shared_key: Optional[str] = None,
        compress: bool = True,
        compress_threshold: int = DEFAULT_COMPRESS_THRESHOLD,
    ):
        self.compress = compress
        self.compress_threshold = compress_threshold
        self._cipher: Optional[AESGCM] = AESGCM(make_key(shared_key)) if shared_key else None

    @property
    def encrypted(self) -> bool:
        """Whether frames are sealed with AES-GCM"""
        return self._cipher is not None

    def encode(self, message: WireMessage) -> bytes:
        """
        Encode a message into one frame

        Args:
            message: Wire message to encode

        Returns:
            Frame bytes ready to be written to the transport
        """
        tag = message_type_of(message)
        body = message.model_dump_json().encode("utf-8")

        flags = 0
        if self.compress and len(body) >= self.compress_threshold:
            body = zlib.compress(body)
            flags |= FLAG_COMPRESSED

        if self._cipher is not None:
            flags |= FLAG_ENCRYPTED
            nonce = os.urandom(NONCE_LEN)
            aad = HEADER.pack(MAGIC, flags, tag, 0)[:AAD_LEN]
            body = nonce + self._cipher.encrypt(nonce, body, aad)

        if len(body) > MAX_PAYLOAD_SIZE:
            raise ProtocolError(f"Frame payload too large: {len(body)} bytes")

        return HEADER.pack(MAGIC, flags, tag, len(body)) + body

    def decode(self, frame: bytes) -> WireMessage:
        """
        Decode exactly one frame

        Raises:
            ProtocolError: Bad magic, length mismatch, unknown type tag,
                failed authentication or an invalid message body
        """
        if len(frame) < HEADER_LEN:
            raise ProtocolError(f"Truncated frame header ({len(frame)} bytes)")

        magic, flags, tag, length = HEADER.unpack_from(frame)
        if magic != MAGIC:
            raise ProtocolError("Invalid frame magic")
        if length > MAX_PAYLOAD_SIZE:
            raise ProtocolError(f"Frame payload too large: {length} bytes")
        if length != len(frame) - HEADER_LEN:
            raise ProtocolError(
                f"Frame length mismatch: header says {length}, got {len(frame) - HEADER_LEN}"
            )

        try:
            message_type = MessageType(tag)
        except ValueError:
            raise ProtocolError(f"Unknown message type: {tag}")

        body = frame[HEADER_LEN:]
        body = self._open(body, flags, frame[:AAD_LEN])

        if flags & FLAG_COMPRESSED:
            try:
                body = zlib.decompress(body)
            except zlib.error as e:
                raise ProtocolError(f"Corrupt compressed payload: {e}")

        message_class = MESSAGE_CLASSES[message_type]
        try:
            return message_class.model_validate_json(body)
        except pydantic.ValidationError as e:
            raise ProtocolError(f"Malformed {message_type.name} message: {e.error_count()} errors")

    def _open(self, body: bytes, flags: int, aad: bytes) -> bytes:
        """Decrypt the payload if the session is encrypted"""
        encrypted = bool(flags & FLAG_ENCRYPTED)
        if self._cipher is None:
            if encrypted:
                raise ProtocolError("Encrypted frame received but no shared key is configured")
            return body

        if not encrypted:
            raise ProtocolError("Unencrypted frame received on an encrypted session")
        if len(body) < NONCE_LEN:
            raise ProtocolError("Encrypted payload shorter than its nonce")

        nonce, sealed = body[:NONCE_LEN], body[NONCE_LEN:]
        try:
            return self._cipher.decrypt(nonce, sealed, aad)
        except InvalidTag:
            logger.warning("Frame failed authentication")
            raise ProtocolError("Frame failed authentication")
