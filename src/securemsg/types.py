"""Protocol constants and exception types for securemsg."""


# Key and signature sizes
PUBLIC_KEY_SIZE = 32
PRIVATE_KEY_SIZE = 32
SIGNATURE_SIZE = 64
SYMMETRIC_KEY_SIZE = 32

# AEAD constants
NONCE_SIZE = 12
TAG_SIZE = 16

# Message header: ratchetPublicKey (32) + previousCounter (4) + messageNumber (4)
HEADER_SIZE = 40
MAX_COUNTER = 0xFFFFFFFF

# Double Ratchet
MAX_SKIP = 1000
MAX_SKIPPED_KEYS = 2000

# File streaming
DEFAULT_CHUNK_SIZE = 64 * 1024

# Prekey policy defaults
DEFAULT_ONE_TIME_PRE_KEY_COUNT = 100
DEFAULT_LOW_WATER_MARK = 5
DEFAULT_SIGNED_PRE_KEY_MAX_AGE_DAYS = 30

# Fingerprint: 160-bit digest
FINGERPRINT_SIZE = 20

# Wire format versions
BUNDLE_VERSION = 1
IDENTITY_VERSION = 1

# KDF domain separation labels
X3DH_INFO = b"securemsg-X3DH-v1"
RATCHET_INFO = b"securemsg-Ratchet-v1"
MESSAGE_KEY_INFO = b"message"
CHAIN_KEY_INFO = b"chain"


# Exception types
class SecureMsgError(Exception):
    """Base exception for securemsg errors."""
    pass


class InvalidPublicKeyError(SecureMsgError):
    """Invalid public key format or length."""
    pass


class InvalidSignatureError(SecureMsgError):
    """Prekey signature missing, malformed or not valid for the identity key."""
    pass


class DecryptionError(SecureMsgError):
    """Authenticated decryption failed."""
    pass


class InvalidHeaderError(SecureMsgError):
    """Message header is malformed."""
    pass


class SerializationError(SecureMsgError):
    """Serialized data could not be decoded."""
    pass


class SessionNotInitializedError(SecureMsgError):
    """Session used before the handshake completed."""

    def __init__(self, message: str = "") -> None:
        super().__init__(
            message
            or "Session not initialized. Call initialize_session or accept_session first."
        )


class TooManySkippedMessagesError(DecryptionError):
    """Message number is too far ahead of the receiving chain."""

    def __init__(self, skipped: int, limit: int) -> None:
        self.skipped = skipped
        self.limit = limit
        super().__init__(f"Too many skipped messages: {skipped} (max {limit})")


class PreKeyNotFoundError(SecureMsgError):
    """One-time prekey unknown or already used."""

    def __init__(self, key_id: str) -> None:
        self.key_id = key_id
        super().__init__(f"One-time prekey not found: {key_id}")


class StaleSignedPreKeyError(SecureMsgError):
    """Handshake references a signed prekey that is no longer current."""
    pass


class FileStreamNotFoundError(SecureMsgError):
    """File stream referenced before it was started."""

    def __init__(self, file_id: str) -> None:
        self.file_id = file_id
        super().__init__(f"File stream not found: {file_id}")


class InvalidChunkError(SecureMsgError):
    """Chunk index outside the expected range."""
    pass


class IncompleteFileError(SecureMsgError):
    """Not all chunks of a file have been received."""

    def __init__(self, received: int, expected: int) -> None:
        self.received = received
        self.expected = expected
        super().__init__(f"Incomplete file. Received {received}/{expected} chunks.")
