"""
X3DH (Extended Triple Diffie-Hellman) key agreement.

Both roles compute the same four DH terms, each from its own side:

    term   initiator (A)           responder (B)
    DH1    DH(IK_A, SPK_B)         DH(SPK_B, IK_A)
    DH2    DH(EK_A, IK_B)          DH(IK_B, EK_A)
    DH3    DH(EK_A, SPK_B)         DH(SPK_B, EK_A)
    DH4    DH(EK_A, OPK_B)         DH(OPK_B, EK_A)     only with a one-time prekey

Identity keys are Ed25519 and enter the DH terms through their Curve25519 form.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .encoding import b64encode, b64decode
from .identity import PreKeyBundle
from .kdf import derive_x3dh_keys
from .keys import (
    KeyPair,
    x25519_ecdh,
    identity_private_to_x25519,
    identity_public_to_x25519,
)
from .signature import require_valid_pre_key_signature
from .types import PUBLIC_KEY_SIZE, SerializationError

logger = logging.getLogger(__name__)


@dataclass
class X3DHSession:
    """Output of the handshake, used once to seed the Double Ratchet."""
    root_key: bytes  # 32 bytes
    chain_key: bytes  # 32 bytes

    def __repr__(self) -> str:
        return "X3DHSession(<redacted>)"


@dataclass
class SessionInit:
    """What the initiator sends alongside its first message.

    Wire format (JSON object, binary fields base64):
        identityKey       initiator's Ed25519 identity public key
        ephemeralKey      initiator's X25519 ephemeral public key
        signedPreKey      responder's signed prekey the initiator used
        oneTimePreKeyId   id of the responder's one-time prekey, if one was used
    """
    identity_key: bytes
    ephemeral_key: bytes
    signed_pre_key: bytes
    one_time_pre_key_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "identityKey": b64encode(self.identity_key),
            "ephemeralKey": b64encode(self.ephemeral_key),
            "signedPreKey": b64encode(self.signed_pre_key),
        }
        if self.one_time_pre_key_id is not None:
            data["oneTimePreKeyId"] = self.one_time_pre_key_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SessionInit":
        try:
            return cls(
                identity_key=b64decode(data["identityKey"], PUBLIC_KEY_SIZE, "identityKey"),
                ephemeral_key=b64decode(data["ephemeralKey"], PUBLIC_KEY_SIZE, "ephemeralKey"),
                signed_pre_key=b64decode(data["signedPreKey"], PUBLIC_KEY_SIZE, "signedPreKey"),
                one_time_pre_key_id=data.get("oneTimePreKeyId"),
            )
        except KeyError as e:
            raise SerializationError(f"Missing session init field: {e.args[0]}") from e


def perform_x3dh_sender(
    my_identity_key_pair: KeyPair,
    my_ephemeral_key_pair: KeyPair,
    their_bundle: PreKeyBundle,
) -> X3DHSession:
    """
    Perform X3DH key agreement as the initiator.

    Args:
        my_identity_key_pair: Our Ed25519 identity key pair
        my_ephemeral_key_pair: A fresh X25519 key pair for this handshake
        their_bundle: The responder's published prekey bundle

    Returns:
        X3DHSession with the shared root and chain keys

    Raises:
        InvalidSignatureError: If the bundle's signed prekey signature is invalid
        ValueError: If the bundle has a one-time prekey without its id
    """
    # Must run before any DH so a substituted prekey never yields key material
    require_valid_pre_key_signature(
        their_bundle.signed_pre_key_signature,
        their_bundle.signed_pre_key,
        their_bundle.identity_key,
    )

    # Without the id the responder cannot find the key and would run 3-DH
    if their_bundle.one_time_pre_key is not None and their_bundle.one_time_pre_key_id is None:
        raise ValueError("Bundle has a one-time prekey but no one-time prekey id")

    my_identity_dh = identity_private_to_x25519(my_identity_key_pair)
    their_identity_dh = identity_public_to_x25519(their_bundle.identity_key)
    ephemeral = my_ephemeral_key_pair.private_key

    dh1 = x25519_ecdh(my_identity_dh, their_bundle.signed_pre_key)
    dh2 = x25519_ecdh(ephemeral, their_identity_dh)
    dh3 = x25519_ecdh(ephemeral, their_bundle.signed_pre_key)
    master_secret = dh1 + dh2 + dh3

    if their_bundle.one_time_pre_key is not None:
        master_secret += x25519_ecdh(ephemeral, their_bundle.one_time_pre_key)
    else:
        logger.info(
            "Bundle for device %s has no one-time prekey; using three-DH handshake",
            their_bundle.device_id,
        )

    root_key, chain_key = derive_x3dh_keys(master_secret)
    return X3DHSession(root_key=root_key, chain_key=chain_key)


def perform_x3dh_receiver(
    my_identity_key_pair: KeyPair,
    my_signed_pre_key_pair: KeyPair,
    my_one_time_pre_key_pair: Optional[KeyPair],
    their_identity_key: bytes,
    their_ephemeral_key: bytes,
) -> X3DHSession:
    """
    Perform X3DH key agreement as the responder.

    Args:
        my_identity_key_pair: Our Ed25519 identity key pair
        my_signed_pre_key_pair: The signed prekey pair the initiator used
        my_one_time_pre_key_pair: The one-time prekey pair the initiator used, if any
        their_identity_key: Initiator's Ed25519 identity public key
        their_ephemeral_key: Initiator's X25519 ephemeral public key

    Returns:
        X3DHSession identical to the initiator's
    """
    my_identity_dh = identity_private_to_x25519(my_identity_key_pair)
    their_identity_dh = identity_public_to_x25519(their_identity_key)
    signed = my_signed_pre_key_pair.private_key

    dh1 = x25519_ecdh(signed, their_identity_dh)
    dh2 = x25519_ecdh(my_identity_dh, their_ephemeral_key)
    dh3 = x25519_ecdh(signed, their_ephemeral_key)
    master_secret = dh1 + dh2 + dh3

    if my_one_time_pre_key_pair is not None:
        master_secret += x25519_ecdh(my_one_time_pre_key_pair.private_key, their_ephemeral_key)

    root_key, chain_key = derive_x3dh_keys(master_secret)
    return X3DHSession(root_key=root_key, chain_key=chain_key)
