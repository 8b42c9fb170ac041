"""
Signed prekey signatures and identity fingerprints.

The identity key signs the X25519 signed prekey with Ed25519. Peers verify the
signature before running X3DH against the prekey, which prevents a relay from
substituting its own prekey.
"""

import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .types import (
    FINGERPRINT_SIZE,
    PUBLIC_KEY_SIZE,
    PRIVATE_KEY_SIZE,
    SIGNATURE_SIZE,
    InvalidSignatureError,
)


def sign_pre_key(pre_key_public: bytes, identity_private_key: bytes) -> bytes:
    """
    Sign a prekey public key with the identity key.

    Args:
        pre_key_public: The X25519 prekey public key (32 bytes)
        identity_private_key: The Ed25519 identity seed (32 bytes)

    Returns:
        The Ed25519 signature (64 bytes)

    Raises:
        ValueError: If a key length is invalid
    """
    if len(pre_key_public) != PUBLIC_KEY_SIZE:
        raise ValueError(
            f"Prekey must be {PUBLIC_KEY_SIZE} bytes, got {len(pre_key_public)}"
        )
    if len(identity_private_key) != PRIVATE_KEY_SIZE:
        raise ValueError(
            f"Identity key must be {PRIVATE_KEY_SIZE} bytes, got {len(identity_private_key)}"
        )

    signing_key = Ed25519PrivateKey.from_private_bytes(identity_private_key)
    return signing_key.sign(pre_key_public)


def verify_pre_key_signature(
    signature: bytes,
    pre_key_public: bytes,
    identity_public_key: bytes,
) -> bool:
    """
    Verify that a prekey was signed by an identity key.

    Malformed inputs verify as False rather than raising, so callers have a
    single failure path.

    Args:
        signature: The Ed25519 signature (64 bytes)
        pre_key_public: The X25519 prekey public key (32 bytes)
        identity_public_key: The Ed25519 identity public key (32 bytes)

    Returns:
        True if the signature is valid, False otherwise
    """
    if len(signature) != SIGNATURE_SIZE:
        return False
    if len(pre_key_public) != PUBLIC_KEY_SIZE or len(identity_public_key) != PUBLIC_KEY_SIZE:
        return False

    try:
        verifying_key = Ed25519PublicKey.from_public_bytes(identity_public_key)
        verifying_key.verify(signature, pre_key_public)
        return True
    except (InvalidSignature, ValueError):
        return False


def require_valid_pre_key_signature(
    signature: bytes,
    pre_key_public: bytes,
    identity_public_key: bytes,
) -> None:
    """
    Verify a prekey signature and raise if it does not hold.

    Raises:
        InvalidSignatureError: If the signature is invalid
    """
    if not verify_pre_key_signature(signature, pre_key_public, identity_public_key):
        raise InvalidSignatureError("Invalid prekey signature")


def fingerprint(public_key: bytes) -> str:
    """
    Generate a human-readable fingerprint for an identity public key.

    The fingerprint is a 160-bit BLAKE2b digest in upper-case hex, split into
    4-character groups for out-of-band comparison.

    Args:
        public_key: The identity public key (32 bytes)

    Returns:
        A fingerprint string like "A7B3 C9D1 E5F2 8A4B ..." (10 groups)
    """
    digest = hashlib.blake2b(public_key, digest_size=FINGERPRINT_SIZE).hexdigest().upper()
    return " ".join(digest[i : i + 4] for i in range(0, len(digest), 4))
