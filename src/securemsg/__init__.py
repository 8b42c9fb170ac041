"""
securemsg - End-to-end encrypted sessions between devices

Python implementation of X3DH key agreement and the Double Ratchet using
X25519, Ed25519, HKDF-SHA256 and ChaCha20-Poly1305, with chunked file streaming.
"""

import logging

from .keys import KeyPair, generate_key_pair, generate_identity_key_pair, x25519_ecdh
from .signature import sign_pre_key, verify_pre_key_signature, fingerprint
from .identity import (
    DeviceIdentity,
    PreKeyBundle,
    generate_device_identity,
    create_pre_key_bundle,
    replenish_one_time_pre_keys,
    rotate_signed_pre_key,
    needs_replenishment,
    signed_pre_key_expired,
    get_one_time_pre_key,
    remove_one_time_pre_key,
    take_issued_one_time_pre_key,
    get_identity_fingerprint,
    serialize_device_identity,
    deserialize_device_identity,
)
from .x3dh import X3DHSession, SessionInit, perform_x3dh_sender, perform_x3dh_receiver
from .header import MessageHeader, EncryptedMessage, encode_header, decode_header
from .double_ratchet import (
    ChainState,
    DoubleRatchetState,
    initialize_double_ratchet,
    encrypt_message,
    decrypt_message,
)
from .hybrid import HybridCiphertext, hybrid_encrypt, hybrid_decrypt
from .models import StreamChunk, EncryptedChunk, FileKeyInfo, FileStreamState
from .sdk import SDKConfig, MessageEncryptionSDK
from .types import (
    HEADER_SIZE,
    MAX_SKIP,
    MAX_SKIPPED_KEYS,
    DEFAULT_CHUNK_SIZE,
    SecureMsgError,
    InvalidPublicKeyError,
    InvalidSignatureError,
    DecryptionError,
    InvalidHeaderError,
    SerializationError,
    SessionNotInitializedError,
    TooManySkippedMessagesError,
    PreKeyNotFoundError,
    StaleSignedPreKeyError,
    FileStreamNotFoundError,
    InvalidChunkError,
    IncompleteFileError,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    # Keys
    "KeyPair",
    "generate_key_pair",
    "generate_identity_key_pair",
    "x25519_ecdh",
    # Signature
    "sign_pre_key",
    "verify_pre_key_signature",
    "fingerprint",
    # Identity
    "DeviceIdentity",
    "PreKeyBundle",
    "generate_device_identity",
    "create_pre_key_bundle",
    "replenish_one_time_pre_keys",
    "rotate_signed_pre_key",
    "needs_replenishment",
    "signed_pre_key_expired",
    "get_one_time_pre_key",
    "remove_one_time_pre_key",
    "take_issued_one_time_pre_key",
    "get_identity_fingerprint",
    "serialize_device_identity",
    "deserialize_device_identity",
    # X3DH
    "X3DHSession",
    "SessionInit",
    "perform_x3dh_sender",
    "perform_x3dh_receiver",
    # Header
    "MessageHeader",
    "EncryptedMessage",
    "encode_header",
    "decode_header",
    # Double Ratchet
    "ChainState",
    "DoubleRatchetState",
    "initialize_double_ratchet",
    "encrypt_message",
    "decrypt_message",
    # Hybrid
    "HybridCiphertext",
    "hybrid_encrypt",
    "hybrid_decrypt",
    # File streaming
    "StreamChunk",
    "EncryptedChunk",
    "FileKeyInfo",
    "FileStreamState",
    # SDK
    "SDKConfig",
    "MessageEncryptionSDK",
    # Constants
    "HEADER_SIZE",
    "MAX_SKIP",
    "MAX_SKIPPED_KEYS",
    "DEFAULT_CHUNK_SIZE",
    # Errors
    "SecureMsgError",
    "InvalidPublicKeyError",
    "InvalidSignatureError",
    "DecryptionError",
    "InvalidHeaderError",
    "SerializationError",
    "SessionNotInitializedError",
    "TooManySkippedMessagesError",
    "PreKeyNotFoundError",
    "StaleSignedPreKeyError",
    "FileStreamNotFoundError",
    "InvalidChunkError",
    "IncompleteFileError",
]
