"""
Device identity and prekey management.

A device owns one Ed25519 identity key pair, one X25519 signed prekey (signed by
the identity key) and a pool of X25519 one-time prekeys. Bundles built from
this material let a peer start a session while the device is offline.

One-time prekeys leave the pool the moment they are published in a bundle. The
private half is kept in an issued map until the single handshake that uses it
is accepted, after which it is gone for good.
"""

import json
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .encoding import b64encode, b64decode
from .keys import KeyPair, generate_key_pair, generate_identity_key_pair
from .signature import sign_pre_key, fingerprint
from .types import (
    BUNDLE_VERSION,
    DEFAULT_LOW_WATER_MARK,
    DEFAULT_ONE_TIME_PRE_KEY_COUNT,
    IDENTITY_VERSION,
    PRIVATE_KEY_SIZE,
    PUBLIC_KEY_SIZE,
    SIGNATURE_SIZE,
    SerializationError,
)

logger = logging.getLogger(__name__)


@dataclass
class DeviceIdentity:
    """Long-term key material of one device.

    The prekey maps are shared by every session of the device. All mutation goes
    through the functions below, which hold lock.
    """
    device_id: str
    identity_key_pair: KeyPair
    signed_pre_key_pair: KeyPair
    signed_pre_key_signature: bytes  # 64 bytes
    one_time_pre_keys: Dict[str, KeyPair] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    signed_pre_key_created_at: Optional[datetime] = None
    issued_one_time_pre_keys: Dict[str, KeyPair] = field(default_factory=dict)
    lock: Any = field(default_factory=threading.RLock, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.signed_pre_key_created_at is None:
            self.signed_pre_key_created_at = self.created_at


@dataclass
class PreKeyBundle:
    """Public prekey bundle, safe to distribute.

    Wire format (JSON object, binary fields base64):
        version                 bundle format version
        deviceId                string
        identityKey             32-byte Ed25519 public key
        signedPreKey            32-byte X25519 public key
        signedPreKeySignature   64-byte Ed25519 signature
        oneTimePreKey           32-byte X25519 public key (optional)
        oneTimePreKeyId         string (optional)
    """
    device_id: str
    identity_key: bytes
    signed_pre_key: bytes
    signed_pre_key_signature: bytes
    one_time_pre_key: Optional[bytes] = None
    one_time_pre_key_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to the JSON wire form."""
        data = {
            "version": BUNDLE_VERSION,
            "deviceId": self.device_id,
            "identityKey": b64encode(self.identity_key),
            "signedPreKey": b64encode(self.signed_pre_key),
            "signedPreKeySignature": b64encode(self.signed_pre_key_signature),
        }
        if self.one_time_pre_key is not None:
            data["oneTimePreKey"] = b64encode(self.one_time_pre_key)
            data["oneTimePreKeyId"] = self.one_time_pre_key_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PreKeyBundle":
        """Create from the JSON wire form.

        Raises:
            SerializationError: If a field is missing, malformed or the version is unknown
        """
        version = data.get("version", BUNDLE_VERSION)
        if version != BUNDLE_VERSION:
            raise SerializationError(f"Unknown bundle version: {version}")

        # Key and id travel together or not at all
        if (data.get("oneTimePreKey") is None) != (data.get("oneTimePreKeyId") is None):
            raise SerializationError("oneTimePreKey and oneTimePreKeyId must both be present")

        try:
            one_time_pre_key = None
            if data.get("oneTimePreKey") is not None:
                one_time_pre_key = b64decode(
                    data["oneTimePreKey"], PUBLIC_KEY_SIZE, "oneTimePreKey"
                )
            return cls(
                device_id=data["deviceId"],
                identity_key=b64decode(data["identityKey"], PUBLIC_KEY_SIZE, "identityKey"),
                signed_pre_key=b64decode(data["signedPreKey"], PUBLIC_KEY_SIZE, "signedPreKey"),
                signed_pre_key_signature=b64decode(
                    data["signedPreKeySignature"], SIGNATURE_SIZE, "signedPreKeySignature"
                ),
                one_time_pre_key=one_time_pre_key,
                one_time_pre_key_id=data.get("oneTimePreKeyId"),
            )
        except KeyError as e:
            raise SerializationError(f"Missing bundle field: {e.args[0]}") from e


def generate_device_identity(
    device_id: str,
    one_time_key_count: int = DEFAULT_ONE_TIME_PRE_KEY_COUNT,
) -> DeviceIdentity:
    """
    Generate a new device identity with prekeys.

    Args:
        device_id: Identifier of the device
        one_time_key_count: Number of one-time prekeys to generate

    Returns:
        DeviceIdentity with a signed prekey and a full one-time prekey pool
    """
    if one_time_key_count < 0:
        raise ValueError("one_time_key_count must be non-negative")

    identity_key_pair = generate_identity_key_pair()
    signed_pre_key_pair = generate_key_pair()
    signature = sign_pre_key(signed_pre_key_pair.public_key, identity_key_pair.private_key)

    identity = DeviceIdentity(
        device_id=device_id,
        identity_key_pair=identity_key_pair,
        signed_pre_key_pair=signed_pre_key_pair,
        signed_pre_key_signature=signature,
    )
    _add_one_time_pre_keys(identity, one_time_key_count)

    logger.info(
        "Generated identity for device %s (%s) with %d one-time prekeys",
        device_id,
        fingerprint(identity_key_pair.public_key),
        one_time_key_count,
    )
    return identity


def create_pre_key_bundle(identity: DeviceIdentity) -> PreKeyBundle:
    """
    Create a prekey bundle for public distribution.

    The first available one-time prekey (insertion order) is moved out of the
    pool. Callers who need an unpredictable choice must shuffle upstream. With
    an empty pool the bundle carries no one-time prekey and peers fall back to
    a three-DH handshake.

    Args:
        identity: The device identity; its one-time prekey pool is modified

    Returns:
        PreKeyBundle with public keys only
    """
    one_time_pre_key = None
    one_time_pre_key_id = None

    with identity.lock:
        if identity.one_time_pre_keys:
            one_time_pre_key_id = next(iter(identity.one_time_pre_keys))
            key_pair = identity.one_time_pre_keys.pop(one_time_pre_key_id)
            identity.issued_one_time_pre_keys[one_time_pre_key_id] = key_pair
            one_time_pre_key = key_pair.public_key
        else:
            logger.warning(
                "Device %s has no one-time prekeys left; publishing bundle without one",
                identity.device_id,
            )

        return PreKeyBundle(
            device_id=identity.device_id,
            identity_key=identity.identity_key_pair.public_key,
            signed_pre_key=identity.signed_pre_key_pair.public_key,
            signed_pre_key_signature=identity.signed_pre_key_signature,
            one_time_pre_key=one_time_pre_key,
            one_time_pre_key_id=one_time_pre_key_id,
        )


def replenish_one_time_pre_keys(
    identity: DeviceIdentity,
    target_count: int = DEFAULT_ONE_TIME_PRE_KEY_COUNT,
) -> int:
    """
    Top the one-time prekey pool up to target_count.

    Returns:
        Number of keys generated (0 if already at or above target)
    """
    with identity.lock:
        needed = max(0, target_count - len(identity.one_time_pre_keys))
        _add_one_time_pre_keys(identity, needed)
    if needed:
        logger.info("Replenished %d one-time prekeys for device %s", needed, identity.device_id)
    return needed


def rotate_signed_pre_key(identity: DeviceIdentity) -> None:
    """Replace the signed prekey pair and its signature together."""
    new_pair = generate_key_pair()
    new_signature = sign_pre_key(new_pair.public_key, identity.identity_key_pair.private_key)

    with identity.lock:
        identity.signed_pre_key_pair = new_pair
        identity.signed_pre_key_signature = new_signature
        identity.signed_pre_key_created_at = datetime.now(timezone.utc)

    logger.info("Rotated signed prekey for device %s", identity.device_id)


def needs_replenishment(
    identity: DeviceIdentity,
    low_water_mark: int = DEFAULT_LOW_WATER_MARK,
) -> bool:
    """Check whether the one-time prekey pool has dropped below the low-water mark."""
    return len(identity.one_time_pre_keys) < low_water_mark


def signed_pre_key_expired(
    identity: DeviceIdentity,
    max_age: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """Check whether the signed prekey is older than max_age."""
    now = now or datetime.now(timezone.utc)
    return now - identity.signed_pre_key_created_at >= max_age


def get_one_time_pre_key(identity: DeviceIdentity, key_id: str) -> Optional[KeyPair]:
    """Get an unpublished one-time prekey by id."""
    return identity.one_time_pre_keys.get(key_id)


def remove_one_time_pre_key(identity: DeviceIdentity, key_id: str) -> bool:
    """Remove an unpublished one-time prekey. Returns True if it existed."""
    with identity.lock:
        return identity.one_time_pre_keys.pop(key_id, None) is not None


def take_issued_one_time_pre_key(identity: DeviceIdentity, key_id: str) -> Optional[KeyPair]:
    """Remove and return a published one-time prekey, or None if unknown or used."""
    with identity.lock:
        return identity.issued_one_time_pre_keys.pop(key_id, None)


def get_identity_fingerprint(public_key: bytes) -> str:
    """Get the identity key fingerprint for out-of-band verification."""
    return fingerprint(public_key)


def serialize_device_identity(identity: DeviceIdentity) -> str:
    """
    Serialize a device identity for local storage.

    The result contains private keys; callers must protect it at rest.
    """
    with identity.lock:
        serializable = {
            "version": IDENTITY_VERSION,
            "deviceId": identity.device_id,
            "identityKeyPair": _key_pair_to_dict(identity.identity_key_pair),
            "signedPreKeyPair": _key_pair_to_dict(identity.signed_pre_key_pair),
            "signedPreKeySignature": b64encode(identity.signed_pre_key_signature),
            "oneTimePreKeys": [
                {"id": key_id, **_key_pair_to_dict(key_pair)}
                for key_id, key_pair in identity.one_time_pre_keys.items()
            ],
            "issuedOneTimePreKeys": [
                {"id": key_id, **_key_pair_to_dict(key_pair)}
                for key_id, key_pair in identity.issued_one_time_pre_keys.items()
            ],
            "createdAt": identity.created_at.isoformat(),
            "signedPreKeyCreatedAt": identity.signed_pre_key_created_at.isoformat(),
        }
    return json.dumps(serializable)


def deserialize_device_identity(serialized: str) -> DeviceIdentity:
    """
    Deserialize a device identity from storage.

    Raises:
        SerializationError: If the data is malformed
    """
    try:
        data = json.loads(serialized)
    except json.JSONDecodeError as e:
        raise SerializationError("Identity is not valid JSON") from e

    version = data.get("version", IDENTITY_VERSION)
    if version != IDENTITY_VERSION:
        raise SerializationError(f"Unknown identity version: {version}")

    try:
        created_at = datetime.fromisoformat(data["createdAt"])
        signed_created = data.get("signedPreKeyCreatedAt")
        return DeviceIdentity(
            device_id=data["deviceId"],
            identity_key_pair=_key_pair_from_dict(data["identityKeyPair"]),
            signed_pre_key_pair=_key_pair_from_dict(data["signedPreKeyPair"]),
            signed_pre_key_signature=b64decode(
                data["signedPreKeySignature"], SIGNATURE_SIZE, "signedPreKeySignature"
            ),
            one_time_pre_keys={
                item["id"]: _key_pair_from_dict(item) for item in data["oneTimePreKeys"]
            },
            created_at=created_at,
            signed_pre_key_created_at=(
                datetime.fromisoformat(signed_created) if signed_created else created_at
            ),
            issued_one_time_pre_keys={
                item["id"]: _key_pair_from_dict(item)
                for item in data.get("issuedOneTimePreKeys", [])
            },
        )
    except KeyError as e:
        raise SerializationError(f"Missing identity field: {e.args[0]}") from e
    except ValueError as e:
        raise SerializationError(f"Invalid identity timestamp: {e}") from e


def _add_one_time_pre_keys(identity: DeviceIdentity, count: int) -> None:
    for _ in range(count):
        key_id = _generate_key_id()
        while key_id in identity.one_time_pre_keys or key_id in identity.issued_one_time_pre_keys:
            key_id = _generate_key_id()
        identity.one_time_pre_keys[key_id] = generate_key_pair()


def _generate_key_id() -> str:
    return secrets.token_hex(8)


def _key_pair_to_dict(key_pair: KeyPair) -> dict:
    return {
        "publicKey": b64encode(key_pair.public_key),
        "privateKey": b64encode(key_pair.private_key),
    }


def _key_pair_from_dict(data: dict) -> KeyPair:
    return KeyPair(
        public_key=b64decode(data["publicKey"], PUBLIC_KEY_SIZE, "publicKey"),
        private_key=b64decode(data["privateKey"], PRIVATE_KEY_SIZE, "privateKey"),
    )
