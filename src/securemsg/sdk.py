"""
Messaging SDK: one end-to-end encrypted session with one peer.

The MessageEncryptionSDK ties a device identity, the X3DH handshake and the
Double Ratchet together, and streams large files as independently encrypted
chunks.

Example usage:
    ```python
    alice = MessageEncryptionSDK(generate_device_identity("alice-phone"))
    bob = MessageEncryptionSDK(generate_device_identity("bob-laptop"))

    # Alice starts a session from Bob's published bundle
    init = alice.initialize_session(bob.create_pre_key_bundle())
    message = alice.encrypt_message("Hello, Bob!")

    # Bob answers the handshake, then decrypts
    bob.accept_session(init)
    assert bob.decrypt_message(message) == b"Hello, Bob!"
    ```

Calls on one SDK instance are serialized with locks. Separate instances (one
per peer) share only the DeviceIdentity, whose prekey maps are guarded by
the identity's own lock.
"""

import logging
import math
import os
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .double_ratchet import (
    DoubleRatchetState,
    initialize_double_ratchet,
    encrypt_message as ratchet_encrypt,
    decrypt_message as ratchet_decrypt,
)
from .header import EncryptedMessage
from .identity import (
    DeviceIdentity,
    PreKeyBundle,
    create_pre_key_bundle,
    needs_replenishment,
    replenish_one_time_pre_keys,
    rotate_signed_pre_key,
    signed_pre_key_expired,
    take_issued_one_time_pre_key,
    get_identity_fingerprint,
)
from .keys import generate_key_pair
from .models import EncryptedChunk, FileKeyInfo, FileStreamState, StreamChunk
from .x3dh import SessionInit, perform_x3dh_sender, perform_x3dh_receiver
from .types import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_LOW_WATER_MARK,
    DEFAULT_ONE_TIME_PRE_KEY_COUNT,
    DEFAULT_SIGNED_PRE_KEY_MAX_AGE_DAYS,
    MAX_COUNTER,
    MAX_SKIP,
    MAX_SKIPPED_KEYS,
    NONCE_SIZE,
    SYMMETRIC_KEY_SIZE,
    DecryptionError,
    FileStreamNotFoundError,
    IncompleteFileError,
    InvalidChunkError,
    PreKeyNotFoundError,
    SecureMsgError,
    SessionNotInitializedError,
    StaleSignedPreKeyError,
)

logger = logging.getLogger(__name__)


@dataclass
class SDKConfig:
    """Configuration for the messaging SDK."""

    chunk_size: int = DEFAULT_CHUNK_SIZE
    """Plaintext size of each file chunk in bytes."""

    max_skip: int = MAX_SKIP
    """Largest message-number gap accepted within one receiving chain."""

    max_skipped_keys: int = MAX_SKIPPED_KEYS
    """Number of skipped message keys kept for late messages; the oldest are evicted first."""

    one_time_pre_key_target: int = DEFAULT_ONE_TIME_PRE_KEY_COUNT
    """Pool size that replenish_keys tops up to."""

    one_time_pre_key_low_water: int = DEFAULT_LOW_WATER_MARK
    """Pool size below which replenish_keys generates new one-time prekeys."""

    signed_pre_key_max_age: timedelta = timedelta(days=DEFAULT_SIGNED_PRE_KEY_MAX_AGE_DAYS)
    """Age after which replenish_keys rotates the signed prekey."""

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.max_skip < 0:
            raise ValueError("max_skip must be non-negative")
        if self.max_skipped_keys < 0:
            raise ValueError("max_skipped_keys must be non-negative")


class MessageEncryptionSDK:
    """End-to-end encrypted session with a single peer."""

    def __init__(self, identity: DeviceIdentity, config: Optional[SDKConfig] = None) -> None:
        """
        Initialize the SDK.

        Args:
            identity: This device's identity and prekeys.
            config: Optional configuration (defaults: 64 KiB chunks, 1000 max skip).
        """
        self._identity = identity
        self._config = config or SDKConfig()
        self._ratchet_state: Optional[DoubleRatchetState] = None
        self._peer_identity_key: Optional[bytes] = None
        self._file_streams: Dict[str, FileStreamState] = {}
        self._session_lock = threading.Lock()
        self._streams_lock = threading.Lock()

    @property
    def identity(self) -> DeviceIdentity:
        """This device's identity."""
        return self._identity

    @property
    def config(self) -> SDKConfig:
        return self._config

    @property
    def has_session(self) -> bool:
        """Whether a handshake has completed."""
        return self._ratchet_state is not None

    @property
    def ratchet_state(self) -> Optional[DoubleRatchetState]:
        """Current ratchet state, for persistence between runs."""
        return self._ratchet_state

    @ratchet_state.setter
    def ratchet_state(self, state: Optional[DoubleRatchetState]) -> None:
        with self._session_lock:
            self._ratchet_state = state

    @property
    def peer_identity_key(self) -> Optional[bytes]:
        """The peer's identity key, once a handshake has run."""
        return self._peer_identity_key

    def peer_fingerprint(self) -> Optional[str]:
        """Fingerprint of the peer's identity key for out-of-band verification."""
        if self._peer_identity_key is None:
            return None
        return get_identity_fingerprint(self._peer_identity_key)

    # Session

    def initialize_session(self, their_bundle: PreKeyBundle) -> SessionInit:
        """
        Start a session from the peer's prekey bundle.

        Args:
            their_bundle: The peer's published bundle.

        Returns:
            SessionInit to deliver to the peer together with the first message.

        Raises:
            InvalidSignatureError: If the bundle's signed prekey signature is invalid.
            ValueError: If the bundle has a one-time prekey without its id.
        """
        ephemeral = generate_key_pair()
        session = perform_x3dh_sender(self._identity.identity_key_pair, ephemeral, their_bundle)

        state = initialize_double_ratchet(
            session.root_key,
            is_initiator=True,
            their_ratchet_key=their_bundle.signed_pre_key,
        )

        with self._session_lock:
            self._ratchet_state = state
            self._peer_identity_key = their_bundle.identity_key

        logger.info(
            "Initialized session with device %s (%s)",
            their_bundle.device_id,
            "4-DH" if their_bundle.one_time_pre_key is not None else "3-DH",
        )

        return SessionInit(
            identity_key=self._identity.identity_key_pair.public_key,
            ephemeral_key=ephemeral.public_key,
            signed_pre_key=their_bundle.signed_pre_key,
            one_time_pre_key_id=(
                their_bundle.one_time_pre_key_id if their_bundle.one_time_pre_key is not None else None
            ),
        )

    def accept_session(self, session_init: SessionInit) -> None:
        """
        Complete a session started by a peer from one of our bundles.

        The one-time prekey named in session_init is deleted, so the same
        handshake cannot be accepted twice.

        Raises:
            StaleSignedPreKeyError: If the peer used a signed prekey we no longer hold.
            PreKeyNotFoundError: If the one-time prekey is unknown or already used.
        """
        identity = self._identity
        key_id = session_init.one_time_pre_key_id

        # Shared with every other session of this device
        with identity.lock:
            signed_pre_key_pair = identity.signed_pre_key_pair
            if session_init.signed_pre_key != signed_pre_key_pair.public_key:
                raise StaleSignedPreKeyError("Handshake uses a signed prekey that is no longer current")

            one_time_pre_key = None
            if key_id is not None:
                one_time_pre_key = take_issued_one_time_pre_key(identity, key_id)
                if one_time_pre_key is None:
                    raise PreKeyNotFoundError(key_id)

        try:
            session = perform_x3dh_receiver(
                identity.identity_key_pair,
                signed_pre_key_pair,
                one_time_pre_key,
                session_init.identity_key,
                session_init.ephemeral_key,
            )
        except SecureMsgError:
            if one_time_pre_key is not None:
                with identity.lock:
                    identity.issued_one_time_pre_keys[key_id] = one_time_pre_key
            raise

        with self._session_lock:
            self._ratchet_state = initialize_double_ratchet(
                session.root_key,
                is_initiator=False,
                our_ratchet_key_pair=signed_pre_key_pair,
            )
            self._peer_identity_key = session_init.identity_key

        logger.info("Accepted session (%s)", "4-DH" if key_id is not None else "3-DH")

    def encrypt_message(self, plaintext: Union[str, bytes]) -> EncryptedMessage:
        """
        Encrypt a message for the peer.

        Raises:
            SessionNotInitializedError: If no session has been established.
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")

        with self._session_lock:
            if self._ratchet_state is None:
                raise SessionNotInitializedError()
            message, self._ratchet_state = ratchet_encrypt(self._ratchet_state, plaintext)
        return message

    def decrypt_message(self, message: EncryptedMessage) -> bytes:
        """
        Decrypt a message from the peer.

        The session state only advances if decryption succeeds.

        Raises:
            SessionNotInitializedError: If no session has been established.
            DecryptionError: If authentication fails.
        """
        with self._session_lock:
            if self._ratchet_state is None:
                raise SessionNotInitializedError()
            plaintext, self._ratchet_state = ratchet_decrypt(
                self._ratchet_state,
                message,
                self._config.max_skip,
                self._config.max_skipped_keys,
            )
        return plaintext

    # Prekeys

    def create_pre_key_bundle(self) -> PreKeyBundle:
        """Create a prekey bundle for this device."""
        return create_pre_key_bundle(self._identity)

    def replenish_keys(self) -> int:
        """
        Top up one-time prekeys below the low-water mark and rotate an expired
        signed prekey.

        Returns:
            Number of one-time prekeys generated.
        """
        config = self._config
        generated = 0
        with self._identity.lock:
            if needs_replenishment(self._identity, config.one_time_pre_key_low_water):
                generated = replenish_one_time_pre_keys(
                    self._identity, config.one_time_pre_key_target
                )
            if signed_pre_key_expired(self._identity, config.signed_pre_key_max_age):
                rotate_signed_pre_key(self._identity)
        return generated

    # File streaming

    def start_file_encryption(self, file_id: str, file_size: int) -> FileKeyInfo:
        """
        Start streaming encryption for a file.

        Args:
            file_id: Identifier of the file stream.
            file_size: Total size of the file in bytes.

        Returns:
            FileKeyInfo with the random per-file key and the chunk count.
        """
        if file_size < 0:
            raise ValueError("file_size must be non-negative")

        encryption_key = os.urandom(SYMMETRIC_KEY_SIZE)
        total_chunks = math.ceil(file_size / self._config.chunk_size)
        self._open_stream(file_id, encryption_key, total_chunks)

        logger.debug("Started encryption of file %s (%d chunks)", file_id, total_chunks)
        return FileKeyInfo(encryption_key=encryption_key, total_chunks=total_chunks)

    def split_file_into_chunks(self, file_data: bytes) -> List[StreamChunk]:
        """Split file data into ordered chunks; the final chunk is flagged is_last."""
        chunk_size = self._config.chunk_size
        total_chunks = math.ceil(len(file_data) / chunk_size)

        return [
            StreamChunk(
                chunk_id=index,
                data=bytes(file_data[index * chunk_size : (index + 1) * chunk_size]),
                is_last=index == total_chunks - 1,
            )
            for index in range(total_chunks)
        ]

    def encrypt_file_chunk(self, file_id: str, chunk: StreamChunk) -> EncryptedChunk:
        """
        Encrypt one chunk under the file key, bound to its index and last-chunk flag.

        Raises:
            FileStreamNotFoundError: If start_file_encryption was not called.
            InvalidChunkError: If the chunk index is out of range.
        """
        stream = self._get_stream(file_id)
        self._check_chunk_id(stream, chunk.chunk_id)

        nonce = os.urandom(NONCE_SIZE)
        encrypted_data = ChaCha20Poly1305(stream.encryption_key).encrypt(
            nonce, chunk.data, _chunk_associated_data(chunk.chunk_id, chunk.is_last)
        )

        return EncryptedChunk(
            chunk_id=chunk.chunk_id,
            encrypted_data=encrypted_data,
            nonce=nonce,
            is_last=chunk.is_last,
        )

    def start_file_decryption(
        self,
        file_id: str,
        encryption_key: bytes,
        total_chunks: int,
    ) -> None:
        """Start streaming decryption with the key and chunk count from the sender."""
        if len(encryption_key) != SYMMETRIC_KEY_SIZE:
            raise ValueError(f"File key must be {SYMMETRIC_KEY_SIZE} bytes")
        if total_chunks < 0:
            raise ValueError("total_chunks must be non-negative")

        self._open_stream(file_id, encryption_key, total_chunks)
        logger.debug("Started decryption of file %s (%d chunks)", file_id, total_chunks)

    def decrypt_file_chunk(self, file_id: str, encrypted_chunk: EncryptedChunk) -> StreamChunk:
        """
        Verify and decrypt one chunk, storing it by index in any arrival order.

        Raises:
            FileStreamNotFoundError: If start_file_decryption was not called.
            InvalidChunkError: If the chunk index is out of range.
            DecryptionError: If authentication fails.
        """
        stream = self._get_stream(file_id)
        self._check_chunk_id(stream, encrypted_chunk.chunk_id)

        try:
            data = ChaCha20Poly1305(stream.encryption_key).decrypt(
                encrypted_chunk.nonce,
                encrypted_chunk.encrypted_data,
                _chunk_associated_data(encrypted_chunk.chunk_id, encrypted_chunk.is_last),
            )
        except (InvalidTag, ValueError) as e:
            raise DecryptionError(f"Chunk {encrypted_chunk.chunk_id} authentication failed") from e

        with self._streams_lock:
            stream.received_chunks[encrypted_chunk.chunk_id] = data

        return StreamChunk(
            chunk_id=encrypted_chunk.chunk_id,
            data=data,
            is_last=encrypted_chunk.is_last,
        )

    def assemble_file(self, file_id: str) -> bytes:
        """
        Concatenate all received chunks in index order and close the stream.

        Raises:
            FileStreamNotFoundError: If the stream does not exist.
            IncompleteFileError: If some chunks have not been received.
        """
        with self._streams_lock:
            stream = self._file_streams.get(file_id)
            if stream is None:
                raise FileStreamNotFoundError(file_id)
            if not stream.is_complete:
                raise IncompleteFileError(len(stream.received_chunks), stream.total_chunks)
            del self._file_streams[file_id]

        logger.debug("Assembled file %s from %d chunks", file_id, stream.total_chunks)
        return b"".join(stream.received_chunks[index] for index in range(stream.total_chunks))

    def finish_file_encryption(self, file_id: str) -> None:
        """
        Close a sending stream once all its chunks are encrypted, dropping the file key.

        Raises:
            FileStreamNotFoundError: If the stream does not exist.
        """
        with self._streams_lock:
            if self._file_streams.pop(file_id, None) is None:
                raise FileStreamNotFoundError(file_id)

        logger.debug("Finished encryption of file %s", file_id)

    def cleanup(self) -> None:
        """Drop all file streams and the ratchet state."""
        with self._streams_lock:
            self._file_streams.clear()
        with self._session_lock:
            # Dropping references is all that can be done for immutable bytes
            self._ratchet_state = None
            self._peer_identity_key = None

    def _open_stream(self, file_id: str, encryption_key: bytes, total_chunks: int) -> None:
        with self._streams_lock:
            self._file_streams[file_id] = FileStreamState(
                file_id=file_id,
                total_chunks=total_chunks,
                encryption_key=encryption_key,
            )

    def _get_stream(self, file_id: str) -> FileStreamState:
        with self._streams_lock:
            stream = self._file_streams.get(file_id)
        if stream is None:
            raise FileStreamNotFoundError(file_id)
        return stream

    @staticmethod
    def _check_chunk_id(stream: FileStreamState, chunk_id: int) -> None:
        if not 0 <= chunk_id < stream.total_chunks or chunk_id > MAX_COUNTER:
            raise InvalidChunkError(
                f"Chunk {chunk_id} out of range for {stream.total_chunks} chunks"
            )


def _chunk_associated_data(chunk_id: int, is_last: bool) -> bytes:
    # uint32 big-endian index, then 0x01 for the final chunk
    return chunk_id.to_bytes(4, byteorder="big") + (b"\x01" if is_last else b"\x00")
