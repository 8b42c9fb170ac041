"""Key generation and Diffie-Hellman for securemsg.

Ratchet, prekey and ephemeral keys are X25519. The identity key is Ed25519 so
that it can sign prekeys; it takes part in X3DH through its Curve25519 form.
"""

from dataclasses import dataclass

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)
from nacl.bindings import (
    crypto_sign_ed25519_pk_to_curve25519,
    crypto_sign_ed25519_sk_to_curve25519,
)
from nacl.exceptions import CryptoError

from .types import PUBLIC_KEY_SIZE, PRIVATE_KEY_SIZE, InvalidPublicKeyError


@dataclass
class KeyPair:
    """Raw key pair."""
    public_key: bytes  # 32 bytes
    private_key: bytes  # 32 bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key.hex()}, private_key=<redacted>)"


def generate_key_pair() -> KeyPair:
    """
    Generate a random X25519 key pair.

    Returns:
        KeyPair with raw 32-byte public and private keys
    """
    private_key = X25519PrivateKey.generate()
    return KeyPair(
        public_key=public_key_to_bytes(private_key.public_key()),
        private_key=private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()),
    )


def generate_identity_key_pair() -> KeyPair:
    """
    Generate a random Ed25519 identity key pair.

    Returns:
        KeyPair whose private key is the 32-byte Ed25519 seed
    """
    private_key = Ed25519PrivateKey.generate()
    return KeyPair(
        public_key=private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw),
        private_key=private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption()),
    )


def x25519_ecdh(private_key: bytes, public_key: bytes) -> bytes:
    """
    Perform X25519 ECDH key exchange.

    Args:
        private_key: Our raw private key (32 bytes)
        public_key: Their raw public key (32 bytes)

    Returns:
        32-byte shared secret

    Raises:
        InvalidPublicKeyError: If the public key is malformed or of low order
    """
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise ValueError(f"Private key must be {PRIVATE_KEY_SIZE} bytes, got {len(private_key)}")

    peer = public_key_from_bytes(public_key)
    try:
        return X25519PrivateKey.from_private_bytes(private_key).exchange(peer)
    except ValueError as e:
        raise InvalidPublicKeyError("Key exchange produced an invalid shared secret") from e


def identity_private_to_x25519(identity_key_pair: KeyPair) -> bytes:
    """Map an Ed25519 identity private key onto its X25519 scalar."""
    try:
        return crypto_sign_ed25519_sk_to_curve25519(
            identity_key_pair.private_key + identity_key_pair.public_key
        )
    except CryptoError as e:
        raise InvalidPublicKeyError("Invalid identity key pair") from e


def identity_public_to_x25519(identity_public_key: bytes) -> bytes:
    """Map an Ed25519 identity public key onto its X25519 point."""
    if len(identity_public_key) != PUBLIC_KEY_SIZE:
        raise InvalidPublicKeyError(
            f"Identity key must be {PUBLIC_KEY_SIZE} bytes, got {len(identity_public_key)}"
        )
    try:
        return crypto_sign_ed25519_pk_to_curve25519(identity_public_key)
    except CryptoError as e:
        raise InvalidPublicKeyError("Identity key is not a valid Ed25519 point") from e


def public_key_to_bytes(public_key: X25519PublicKey) -> bytes:
    """Convert X25519 public key to raw bytes."""
    return public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)


def public_key_from_bytes(data: bytes) -> X25519PublicKey:
    """Create X25519 public key from raw bytes."""
    if len(data) != PUBLIC_KEY_SIZE:
        raise InvalidPublicKeyError(f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(data)}")
    return X25519PublicKey.from_public_bytes(data)
