"""Message header encoding and the encrypted message wire form."""

import struct
from dataclasses import dataclass

from .encoding import b64encode, b64decode
from .types import (
    HEADER_SIZE,
    MAX_COUNTER,
    PUBLIC_KEY_SIZE,
    InvalidHeaderError,
    SerializationError,
)

_COUNTERS = struct.Struct("<II")


@dataclass
class MessageHeader:
    """Double Ratchet message header."""
    ratchet_public_key: bytes  # 32 bytes
    previous_counter: int
    message_number: int


@dataclass
class EncryptedMessage:
    """Header bytes plus nonce-prefixed AEAD output."""
    header: bytes  # 40 bytes
    ciphertext: bytes  # nonce (12) + ciphertext + tag (16)

    def to_dict(self) -> dict:
        return {
            "header": b64encode(self.header),
            "ciphertext": b64encode(self.ciphertext),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedMessage":
        try:
            return cls(
                header=b64decode(data["header"], HEADER_SIZE, "header"),
                ciphertext=b64decode(data["ciphertext"], field="ciphertext"),
            )
        except KeyError as e:
            raise SerializationError(f"Missing message field: {e.args[0]}") from e


def encode_header(header: MessageHeader) -> bytes:
    """
    Encode a header to bytes.

    Format (40 bytes):
        [0-31]   ratchetPublicKey (32 bytes)
        [32-35]  previousCounter (uint32, little-endian)
        [36-39]  messageNumber (uint32, little-endian)

    Args:
        header: MessageHeader to encode

    Returns:
        Encoded bytes

    Raises:
        InvalidHeaderError: If a field is out of range
    """
    if len(header.ratchet_public_key) != PUBLIC_KEY_SIZE:
        raise InvalidHeaderError(
            f"Ratchet key must be {PUBLIC_KEY_SIZE} bytes, got {len(header.ratchet_public_key)}"
        )
    for name in ("previous_counter", "message_number"):
        value = getattr(header, name)
        if not 0 <= value <= MAX_COUNTER:
            raise InvalidHeaderError(f"{name} out of range: {value}")

    return header.ratchet_public_key + _COUNTERS.pack(
        header.previous_counter, header.message_number
    )


def decode_header(data: bytes) -> MessageHeader:
    """
    Decode bytes into a header.

    Raises:
        InvalidHeaderError: If data is not exactly HEADER_SIZE bytes
    """
    if len(data) != HEADER_SIZE:
        raise InvalidHeaderError(f"Header must be {HEADER_SIZE} bytes, got {len(data)}")

    previous_counter, message_number = _COUNTERS.unpack_from(data, PUBLIC_KEY_SIZE)
    return MessageHeader(
        ratchet_public_key=bytes(data[:PUBLIC_KEY_SIZE]),
        previous_counter=previous_counter,
        message_number=message_number,
    )
