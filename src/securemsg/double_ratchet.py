"""
Double Ratchet algorithm.

Every message key comes from a symmetric KDF chain; the chains are re-keyed by
a Diffie-Hellman ratchet whenever the peer shows a new ratchet public key.

Receiving a new peer key runs the receiving half of the DH ratchet at once and
drops the sending chain. The sending half (fresh local key pair, new sending
chain) runs on the next encrypt. Until then both peers hold the same root key.

All functions take a state and return a new one. The input state is never
modified, so a caller that hits an error still holds its last good state.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .encoding import b64encode, b64decode
from .header import EncryptedMessage, MessageHeader, encode_header, decode_header
from .kdf import kdf_chain, kdf_root
from .keys import KeyPair, generate_key_pair, x25519_ecdh
from .types import (
    MAX_SKIP,
    MAX_SKIPPED_KEYS,
    NONCE_SIZE,
    PRIVATE_KEY_SIZE,
    PUBLIC_KEY_SIZE,
    SYMMETRIC_KEY_SIZE,
    TAG_SIZE,
    DecryptionError,
    InvalidPublicKeyError,
    SerializationError,
    SessionNotInitializedError,
    TooManySkippedMessagesError,
)

logger = logging.getLogger(__name__)

SkippedKeyId = Tuple[bytes, int]


@dataclass
class ChainState:
    """Position in one symmetric KDF chain."""
    chain_key: bytes  # 32 bytes
    message_number: int = 0


@dataclass
class DoubleRatchetState:
    """Double Ratchet session state.

    Attributes:
        root_key: Current root key
        sending_ratchet_key: Our current ratchet key pair
        sending_chain: Sending chain, None until the sending half of a DH step has run
        receiving_chain: Receiving chain, None until the peer's first message
        receiving_ratchet_key: Peer's current ratchet public key
        previous_counter: Length of our previous sending chain
        skipped_keys: Message keys derived for messages not yet received
        message_number: Total number of messages encrypted in this session
    """
    root_key: bytes
    sending_ratchet_key: KeyPair
    sending_chain: Optional[ChainState] = None
    receiving_chain: Optional[ChainState] = None
    receiving_ratchet_key: Optional[bytes] = None
    previous_counter: int = 0
    skipped_keys: Dict[SkippedKeyId, bytes] = field(default_factory=dict)
    message_number: int = 0

    def __repr__(self) -> str:
        return (
            f"DoubleRatchetState(sending={_chain_position(self.sending_chain)}, "
            f"receiving={_chain_position(self.receiving_chain)}, "
            f"previous_counter={self.previous_counter}, "
            f"skipped={len(self.skipped_keys)}, message_number={self.message_number})"
        )

    def copy(self) -> "DoubleRatchetState":
        """Copy with an independent skipped-key cache."""
        return replace(self, skipped_keys=dict(self.skipped_keys))

    def to_dict(self) -> dict:
        """Serialize for persistence. Contains secret key material."""
        return {
            "rootKey": b64encode(self.root_key),
            "sendingRatchetKey": {
                "publicKey": b64encode(self.sending_ratchet_key.public_key),
                "privateKey": b64encode(self.sending_ratchet_key.private_key),
            },
            "sendingChain": _chain_to_dict(self.sending_chain),
            "receivingChain": _chain_to_dict(self.receiving_chain),
            "receivingRatchetKey": (
                b64encode(self.receiving_ratchet_key) if self.receiving_ratchet_key else None
            ),
            "previousCounter": self.previous_counter,
            "skippedKeys": [
                {
                    "ratchetKey": b64encode(ratchet_key),
                    "messageNumber": number,
                    "messageKey": b64encode(message_key),
                }
                for (ratchet_key, number), message_key in self.skipped_keys.items()
            ],
            "messageNumber": self.message_number,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DoubleRatchetState":
        """Restore from to_dict output."""
        try:
            receiving_ratchet_key = data.get("receivingRatchetKey")
            return cls(
                root_key=b64decode(data["rootKey"], SYMMETRIC_KEY_SIZE, "rootKey"),
                sending_ratchet_key=KeyPair(
                    public_key=b64decode(
                        data["sendingRatchetKey"]["publicKey"], PUBLIC_KEY_SIZE, "publicKey"
                    ),
                    private_key=b64decode(
                        data["sendingRatchetKey"]["privateKey"], PRIVATE_KEY_SIZE, "privateKey"
                    ),
                ),
                sending_chain=_chain_from_dict(data.get("sendingChain")),
                receiving_chain=_chain_from_dict(data.get("receivingChain")),
                receiving_ratchet_key=(
                    b64decode(receiving_ratchet_key, PUBLIC_KEY_SIZE, "receivingRatchetKey")
                    if receiving_ratchet_key
                    else None
                ),
                previous_counter=int(data["previousCounter"]),
                skipped_keys={
                    (
                        b64decode(item["ratchetKey"], PUBLIC_KEY_SIZE, "ratchetKey"),
                        int(item["messageNumber"]),
                    ): b64decode(item["messageKey"], SYMMETRIC_KEY_SIZE, "messageKey")
                    for item in data.get("skippedKeys", [])
                },
                message_number=int(data.get("messageNumber", 0)),
            )
        except (KeyError, TypeError) as e:
            raise SerializationError(f"Invalid ratchet state: {e}") from e


def initialize_double_ratchet(
    root_key: bytes,
    is_initiator: bool,
    their_ratchet_key: Optional[bytes] = None,
    our_ratchet_key_pair: Optional[KeyPair] = None,
) -> DoubleRatchetState:
    """
    Initialize Double Ratchet state from an X3DH root key.

    Args:
        root_key: Root key from X3DH (32 bytes)
        is_initiator: True for the side that sent the handshake
        their_ratchet_key: Peer's initial ratchet public key (the responder's
            signed prekey); the initiator seeds its sending chain from it
        our_ratchet_key_pair: Initial ratchet key pair to use instead of a fresh
            one; the responder passes its signed prekey pair

    Returns:
        New DoubleRatchetState
    """
    if len(root_key) != SYMMETRIC_KEY_SIZE:
        raise ValueError(f"Root key must be {SYMMETRIC_KEY_SIZE} bytes, got {len(root_key)}")

    state = DoubleRatchetState(
        root_key=root_key,
        sending_ratchet_key=our_ratchet_key_pair or generate_key_pair(),
    )

    if is_initiator and their_ratchet_key is not None:
        state.receiving_ratchet_key = their_ratchet_key
        _start_sending_chain(state, state.sending_ratchet_key)

    return state


def encrypt_message(
    state: DoubleRatchetState,
    plaintext: bytes,
) -> Tuple[EncryptedMessage, DoubleRatchetState]:
    """
    Encrypt a message.

    Args:
        state: Current ratchet state (not modified)
        plaintext: Message bytes

    Returns:
        Tuple of (EncryptedMessage, new_state)

    Raises:
        SessionNotInitializedError: If no sending chain can be established yet
    """
    new_state = state.copy()

    if new_state.sending_chain is None:
        if new_state.receiving_ratchet_key is None:
            raise SessionNotInitializedError(
                "No sending chain yet: the responder must receive a message first"
            )
        _start_sending_chain(new_state, generate_key_pair())

    chain = new_state.sending_chain
    header_bytes = encode_header(
        MessageHeader(
            ratchet_public_key=new_state.sending_ratchet_key.public_key,
            previous_counter=new_state.previous_counter,
            message_number=chain.message_number,
        )
    )

    next_chain_key, message_key = kdf_chain(chain.chain_key)

    nonce = os.urandom(NONCE_SIZE)
    ciphertext = ChaCha20Poly1305(message_key).encrypt(nonce, plaintext, header_bytes)

    new_state.sending_chain = ChainState(next_chain_key, chain.message_number + 1)
    new_state.message_number += 1

    return EncryptedMessage(header=header_bytes, ciphertext=nonce + ciphertext), new_state


def decrypt_message(
    state: DoubleRatchetState,
    message: EncryptedMessage,
    max_skip: int = MAX_SKIP,
    max_skipped_keys: int = MAX_SKIPPED_KEYS,
) -> Tuple[bytes, DoubleRatchetState]:
    """
    Decrypt a message, performing a DH ratchet step if the sender's key changed.

    Args:
        state: Current ratchet state (not modified)
        message: The encrypted message
        max_skip: Largest gap in message numbers accepted within one chain
        max_skipped_keys: Size of the skipped-key cache; the oldest keys are evicted first

    Returns:
        Tuple of (plaintext, new_state)

    Raises:
        InvalidHeaderError: If the header is malformed
        TooManySkippedMessagesError: If the gap exceeds max_skip
        DecryptionError: If authentication fails or the message key was already used
    """
    if len(message.ciphertext) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("Ciphertext too short")

    header = decode_header(message.header)
    new_state = state.copy()

    message_key = new_state.skipped_keys.pop(
        (header.ratchet_public_key, header.message_number), None
    )

    if message_key is None:
        if header.ratchet_public_key != new_state.receiving_ratchet_key:
            _skip_message_keys(new_state, header.previous_counter, max_skip, max_skipped_keys)
            try:
                _dh_ratchet_step(new_state, header.ratchet_public_key)
            except InvalidPublicKeyError as e:
                raise DecryptionError("Invalid ratchet key in header") from e
        elif new_state.receiving_chain is None:
            raise DecryptionError("No receiving chain for this ratchet key")

        if header.message_number < new_state.receiving_chain.message_number:
            raise DecryptionError("Message key already used")

        _skip_message_keys(new_state, header.message_number, max_skip, max_skipped_keys)
        next_chain_key, message_key = kdf_chain(new_state.receiving_chain.chain_key)
        new_state.receiving_chain = ChainState(next_chain_key, header.message_number + 1)

    nonce = message.ciphertext[:NONCE_SIZE]
    try:
        plaintext = ChaCha20Poly1305(message_key).decrypt(
            nonce, message.ciphertext[NONCE_SIZE:], message.header
        )
    except InvalidTag as e:
        raise DecryptionError("Message authentication failed") from e

    return plaintext, new_state


def _start_sending_chain(state: DoubleRatchetState, key_pair: KeyPair) -> None:
    """Sending half of a DH ratchet step."""
    state.sending_ratchet_key = key_pair
    dh_output = x25519_ecdh(key_pair.private_key, state.receiving_ratchet_key)
    state.root_key, chain_key = kdf_root(state.root_key, dh_output)
    state.sending_chain = ChainState(chain_key, 0)
    logger.debug("Started sending chain (previous counter %d)", state.previous_counter)


def _dh_ratchet_step(state: DoubleRatchetState, their_ratchet_key: bytes) -> None:
    """Receiving half of a DH ratchet step."""
    if state.sending_chain is not None:
        state.previous_counter = state.sending_chain.message_number
    state.sending_chain = None

    state.receiving_ratchet_key = their_ratchet_key
    dh_output = x25519_ecdh(state.sending_ratchet_key.private_key, their_ratchet_key)
    state.root_key, chain_key = kdf_root(state.root_key, dh_output)
    state.receiving_chain = ChainState(chain_key, 0)
    logger.debug("DH ratchet step on new peer ratchet key")


def _skip_message_keys(
    state: DoubleRatchetState,
    until: int,
    max_skip: int,
    max_skipped_keys: int,
) -> None:
    """Cache message keys of the receiving chain up to (not including) until."""
    chain = state.receiving_chain
    if chain is None or until <= chain.message_number:
        return

    if until - chain.message_number > max_skip:
        raise TooManySkippedMessagesError(until - chain.message_number, max_skip)

    chain_key = chain.chain_key
    for number in range(chain.message_number, until):
        chain_key, message_key = kdf_chain(chain_key)
        state.skipped_keys[(state.receiving_ratchet_key, number)] = message_key

    state.receiving_chain = ChainState(chain_key, until)
    logger.debug("Cached %d skipped message keys", until - chain.message_number)

    # Dicts keep insertion order, so the first keys are the oldest
    evicted = 0
    while len(state.skipped_keys) > max_skipped_keys:
        del state.skipped_keys[next(iter(state.skipped_keys))]
        evicted += 1
    if evicted:
        logger.warning("Evicted %d skipped message keys over the cache limit", evicted)


def _chain_position(chain: Optional[ChainState]) -> Optional[int]:
    return chain.message_number if chain else None


def _chain_to_dict(chain: Optional[ChainState]) -> Optional[dict]:
    if chain is None:
        return None
    return {"chainKey": b64encode(chain.chain_key), "messageNumber": chain.message_number}


def _chain_from_dict(data: Optional[dict]) -> Optional[ChainState]:
    if data is None:
        return None
    return ChainState(
        chain_key=b64decode(data["chainKey"], SYMMETRIC_KEY_SIZE, "chainKey"),
        message_number=int(data["messageNumber"]),
    )
