"""Single-shot hybrid encryption: ephemeral X25519 + AES-256-GCM.

For wrapping material when no ratchet session exists yet. Forward secrecy is
limited to the single use of the ephemeral key.
"""

import hashlib
import os
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .encoding import b64encode, b64decode
from .keys import generate_key_pair, x25519_ecdh
from .types import (
    NONCE_SIZE,
    PUBLIC_KEY_SIZE,
    SYMMETRIC_KEY_SIZE,
    DecryptionError,
    SerializationError,
)


@dataclass
class HybridCiphertext:
    """Hybrid encryption output."""
    ephemeral_public_key: bytes  # 32 bytes
    nonce: bytes  # 12 bytes
    ciphertext: bytes  # ciphertext + 16-byte tag

    def to_dict(self) -> dict:
        return {
            "ephemeralKey": b64encode(self.ephemeral_public_key),
            "nonce": b64encode(self.nonce),
            "encryptedData": b64encode(self.ciphertext),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HybridCiphertext":
        try:
            return cls(
                ephemeral_public_key=b64decode(data["ephemeralKey"], PUBLIC_KEY_SIZE, "ephemeralKey"),
                nonce=b64decode(data["nonce"], NONCE_SIZE, "nonce"),
                ciphertext=b64decode(data["encryptedData"], field="encryptedData"),
            )
        except KeyError as e:
            raise SerializationError(f"Missing hybrid field: {e.args[0]}") from e


def hybrid_encrypt(plaintext: Union[str, bytes], their_public_key: bytes) -> HybridCiphertext:
    """
    Encrypt data for a recipient's long-term X25519 public key.

    Args:
        plaintext: Data to encrypt (str is UTF-8 encoded)
        their_public_key: Recipient's X25519 public key (32 bytes)

    Returns:
        HybridCiphertext
    """
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")

    ephemeral = generate_key_pair()
    shared_secret = x25519_ecdh(ephemeral.private_key, their_public_key)

    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(_derive_key(shared_secret)).encrypt(nonce, plaintext, None)

    return HybridCiphertext(
        ephemeral_public_key=ephemeral.public_key,
        nonce=nonce,
        ciphertext=ciphertext,
    )


def hybrid_decrypt(encrypted: HybridCiphertext, my_private_key: bytes) -> bytes:
    """
    Decrypt hybrid ciphertext with the recipient's static private key.

    Raises:
        DecryptionError: If authentication fails
    """
    shared_secret = x25519_ecdh(my_private_key, encrypted.ephemeral_public_key)

    try:
        return AESGCM(_derive_key(shared_secret)).decrypt(
            encrypted.nonce, encrypted.ciphertext, None
        )
    except InvalidTag as e:
        raise DecryptionError("Hybrid decryption failed") from e


def _derive_key(shared_secret: bytes) -> bytes:
    return hashlib.blake2b(shared_secret, digest_size=SYMMETRIC_KEY_SIZE).digest()
