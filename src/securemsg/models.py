"""Models for chunked file streaming."""

from dataclasses import dataclass, field
from typing import Dict

from .encoding import b64encode, b64decode
from .types import NONCE_SIZE, SYMMETRIC_KEY_SIZE, SerializationError


@dataclass
class StreamChunk:
    """A plaintext file chunk."""
    chunk_id: int
    data: bytes
    is_last: bool


@dataclass
class EncryptedChunk:
    """An encrypted file chunk as sent on the wire."""
    chunk_id: int
    encrypted_data: bytes  # ciphertext + 16-byte tag
    nonce: bytes  # 12 bytes
    is_last: bool

    def to_dict(self) -> dict:
        return {
            "chunkId": self.chunk_id,
            "encryptedData": b64encode(self.encrypted_data),
            "nonce": b64encode(self.nonce),
            "isLast": self.is_last,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedChunk":
        try:
            chunk_id = data["chunkId"]
            if not isinstance(chunk_id, int) or isinstance(chunk_id, bool):
                raise SerializationError("chunkId must be an integer")
            return cls(
                chunk_id=chunk_id,
                encrypted_data=b64decode(data["encryptedData"], field="encryptedData"),
                nonce=b64decode(data["nonce"], NONCE_SIZE, "nonce"),
                is_last=bool(data["isLast"]),
            )
        except KeyError as e:
            raise SerializationError(f"Missing chunk field: {e.args[0]}") from e


@dataclass
class FileKeyInfo:
    """Per-file key and chunk count, delivered to the receiver out of band."""
    encryption_key: bytes  # 32 bytes
    total_chunks: int

    def __repr__(self) -> str:
        return f"FileKeyInfo(encryption_key=<redacted>, total_chunks={self.total_chunks})"

    def to_dict(self) -> dict:
        return {
            "encryptionKey": b64encode(self.encryption_key),
            "totalChunks": self.total_chunks,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileKeyInfo":
        try:
            return cls(
                encryption_key=b64decode(data["encryptionKey"], SYMMETRIC_KEY_SIZE, "encryptionKey"),
                total_chunks=int(data["totalChunks"]),
            )
        except KeyError as e:
            raise SerializationError(f"Missing file key field: {e.args[0]}") from e


@dataclass
class FileStreamState:
    """State of one in-flight file stream."""
    file_id: str
    total_chunks: int
    encryption_key: bytes
    received_chunks: Dict[int, bytes] = field(default_factory=dict)

    def __repr__(self) -> str:
        return (
            f"FileStreamState(file_id={self.file_id!r}, total_chunks={self.total_chunks}, "
            f"received={len(self.received_chunks)})"
        )

    @property
    def is_complete(self) -> bool:
        """Whether every chunk has been received."""
        return len(self.received_chunks) == self.total_chunks
