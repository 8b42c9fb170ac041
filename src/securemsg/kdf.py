"""HKDF-SHA256 key derivation for the X3DH handshake and the Double Ratchet.

Three derivations:
    - X3DH master secret -> (root key, chain key)
    - Root KDF: (root key, DH output) -> (new root key, new chain key)
    - Chain KDF: chain key -> message key ("message") and next chain key ("chain")
"""

from typing import Tuple

from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.hashes import SHA256

from .types import (
    SYMMETRIC_KEY_SIZE,
    X3DH_INFO,
    RATCHET_INFO,
    MESSAGE_KEY_INFO,
    CHAIN_KEY_INFO,
)


def derive_x3dh_keys(master_secret: bytes) -> Tuple[bytes, bytes]:
    """Derive the initial root and chain keys from concatenated DH outputs.

    Args:
        master_secret: DH1 || DH2 || DH3 [|| DH4].

    Returns:
        Tuple of (root_key, chain_key), 32 bytes each.
    """
    hkdf = HKDF(
        algorithm=SHA256(),
        length=2 * SYMMETRIC_KEY_SIZE,
        salt=bytes(SYMMETRIC_KEY_SIZE),
        info=X3DH_INFO,
    )
    output = hkdf.derive(master_secret)
    return output[:SYMMETRIC_KEY_SIZE], output[SYMMETRIC_KEY_SIZE:]


def kdf_root(root_key: bytes, dh_output: bytes) -> Tuple[bytes, bytes]:
    """Root KDF for a DH ratchet step.

    Args:
        root_key: The current root key (32 bytes), used as HKDF salt.
        dh_output: The ratchet DH shared secret (32 bytes).

    Returns:
        Tuple of (new_root_key, new_chain_key).
    """
    hkdf = HKDF(
        algorithm=SHA256(),
        length=2 * SYMMETRIC_KEY_SIZE,
        salt=root_key,
        info=RATCHET_INFO,
    )
    output = hkdf.derive(dh_output)
    return output[:SYMMETRIC_KEY_SIZE], output[SYMMETRIC_KEY_SIZE:]


def derive_message_key(chain_key: bytes) -> bytes:
    """Derive the message key for the current chain position."""
    hkdf = HKDF(
        algorithm=SHA256(),
        length=SYMMETRIC_KEY_SIZE,
        salt=None,
        info=MESSAGE_KEY_INFO,
    )
    return hkdf.derive(chain_key)


def advance_chain_key(chain_key: bytes) -> bytes:
    """Derive the next chain key."""
    hkdf = HKDF(
        algorithm=SHA256(),
        length=SYMMETRIC_KEY_SIZE,
        salt=None,
        info=CHAIN_KEY_INFO,
    )
    return hkdf.derive(chain_key)


def kdf_chain(chain_key: bytes) -> Tuple[bytes, bytes]:
    """Symmetric ratchet step.

    Returns:
        Tuple of (next_chain_key, message_key).
    """
    return advance_chain_key(chain_key), derive_message_key(chain_key)
