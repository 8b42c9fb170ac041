"""Tests for the Double Ratchet."""

import itertools
import os

import pytest

from securemsg.double_ratchet import (
    DoubleRatchetState,
    initialize_double_ratchet,
    encrypt_message,
    decrypt_message,
)
from securemsg.header import EncryptedMessage, decode_header
from securemsg.keys import generate_key_pair
from securemsg.types import (
    DecryptionError,
    SerializationError,
    SessionNotInitializedError,
    TooManySkippedMessagesError,
)


@pytest.fixture
def states():
    """Initiator and responder states sharing a root key."""
    root_key = os.urandom(32)
    responder_key = generate_key_pair()

    alice = initialize_double_ratchet(root_key, True, their_ratchet_key=responder_key.public_key)
    bob = initialize_double_ratchet(root_key, False, our_ratchet_key_pair=responder_key)
    return alice, bob


def _send(state, *texts):
    messages = []
    for text in texts:
        message, state = encrypt_message(state, text)
        messages.append(message)
    return messages, state


def _flip_bit(data: bytes, bit: int) -> bytes:
    mutable = bytearray(data)
    mutable[bit // 8] ^= 1 << (bit % 8)
    return bytes(mutable)


class TestInitialization:
    """Tests for state setup."""

    def test_initiator_can_send(self, states) -> None:
        """The initiator has a sending chain straight away."""
        alice, _ = states
        assert alice.sending_chain is not None
        assert alice.receiving_chain is None

    def test_responder_cannot_send_first(self, states) -> None:
        """The responder has no sending chain until it receives."""
        _, bob = states

        with pytest.raises(SessionNotInitializedError):
            encrypt_message(bob, b"too early")

    def test_root_key_length(self) -> None:
        """Root keys must be 32 bytes."""
        with pytest.raises(ValueError):
            initialize_double_ratchet(b"short", True, generate_key_pair().public_key)

    def test_repr_hides_keys(self, states) -> None:
        """State repr carries no key material."""
        alice, _ = states
        assert alice.root_key.hex() not in repr(alice)
        assert alice.sending_ratchet_key.private_key.hex() not in repr(alice)


class TestConversation:
    """Tests for in-order exchanges."""

    def test_single_message(self, states) -> None:
        """One message decrypts."""
        alice, bob = states

        message, alice = encrypt_message(alice, b"Hello, Bob!")
        plaintext, bob = decrypt_message(bob, message)

        assert plaintext == b"Hello, Bob!"

    def test_header_counters(self, states) -> None:
        """Message numbers count up within a chain."""
        alice, _ = states
        messages, alice = _send(alice, b"a", b"b", b"c")

        assert [decode_header(m.header).message_number for m in messages] == [0, 1, 2]
        assert alice.message_number == 3

    def test_root_keys_match_after_one_way_exchange(self, states) -> None:
        """After Bob receives, both sides hold the same root key."""
        alice, bob = states
        messages, alice = _send(alice, b"Hello, Bob!", b"How are you?")

        for message in messages:
            _, bob = decrypt_message(bob, message)

        assert alice.root_key == bob.root_key

    def test_ping_pong(self, states) -> None:
        """Alternating senders ratchet on every turn."""
        alice, bob = states
        seen_keys = set()

        for turn in range(6):
            message, alice = encrypt_message(alice, f"alice {turn}".encode())
            plaintext, bob = decrypt_message(bob, message)
            assert plaintext == f"alice {turn}".encode()
            seen_keys.add(decode_header(message.header).ratchet_public_key)

            message, bob = encrypt_message(bob, f"bob {turn}".encode())
            plaintext, alice = decrypt_message(alice, message)
            assert plaintext == f"bob {turn}".encode()
            seen_keys.add(decode_header(message.header).ratchet_public_key)

        assert len(seen_keys) == 12

    def test_previous_counter(self, states) -> None:
        """A new chain announces the length of the previous one."""
        alice, bob = states
        messages, alice = _send(alice, b"1", b"2", b"3")
        for message in messages:
            _, bob = decrypt_message(bob, message)

        reply, bob = encrypt_message(bob, b"reply")
        _, alice = decrypt_message(alice, reply)
        message, alice = encrypt_message(alice, b"again")

        header = decode_header(message.header)
        assert header.previous_counter == 3
        assert header.message_number == 0

    def test_empty_plaintext(self, states) -> None:
        """Empty messages are allowed."""
        alice, bob = states
        message, _ = encrypt_message(alice, b"")

        assert decrypt_message(bob, message)[0] == b""


class TestOutOfOrder:
    """Tests for skipped message keys."""

    @pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
    def test_any_order_within_chain(self, states, order) -> None:
        """Every arrival order decrypts and drains the cache."""
        alice, bob = states
        messages, _ = _send(alice, b"M1", b"M2", b"M3")

        for index in order:
            plaintext, bob = decrypt_message(bob, messages[index])
            assert plaintext == f"M{index + 1}".encode()

        assert bob.skipped_keys == {}

    def test_skipped_cache_size(self, states) -> None:
        """Receiving message 3 first caches keys for 1 and 2."""
        alice, bob = states
        messages, _ = _send(alice, b"M1", b"M2", b"M3")

        _, bob = decrypt_message(bob, messages[2])
        assert len(bob.skipped_keys) == 2

        _, bob = decrypt_message(bob, messages[0])
        assert len(bob.skipped_keys) == 1

    def test_late_message_from_previous_chain(self, states) -> None:
        """A message delayed across a DH step still decrypts."""
        alice, bob = states
        (first, delayed), alice = _send(alice, b"first", b"delayed")
        _, bob = decrypt_message(bob, first)

        reply, bob = encrypt_message(bob, b"reply")
        _, alice = decrypt_message(alice, reply)
        newer, alice = encrypt_message(alice, b"newer")

        plaintext, bob = decrypt_message(bob, newer)
        assert plaintext == b"newer"
        assert len(bob.skipped_keys) == 1

        plaintext, bob = decrypt_message(bob, delayed)
        assert plaintext == b"delayed"
        assert bob.skipped_keys == {}

    def test_gap_limit(self, states) -> None:
        """Gaps beyond max_skip are refused without changing state."""
        alice, bob = states
        messages, _ = _send(alice, *[b"x"] * 6)

        with pytest.raises(TooManySkippedMessagesError) as excinfo:
            decrypt_message(bob, messages[5], max_skip=4)

        assert excinfo.value.skipped == 5
        assert excinfo.value.limit == 4
        assert bob.skipped_keys == {}

        plaintext, _ = decrypt_message(bob, messages[4], max_skip=4)
        assert plaintext == b"x"

    def test_skipped_cache_evicts_oldest(self, states) -> None:
        """The cache keeps only the newest keys once it is full."""
        alice, bob = states
        messages, _ = _send(alice, b"M1", b"M2", b"M3", b"M4", b"M5", b"M6")

        _, bob = decrypt_message(bob, messages[5], max_skipped_keys=3)
        assert sorted(number for _, number in bob.skipped_keys) == [2, 3, 4]

        with pytest.raises(DecryptionError):
            decrypt_message(bob, messages[0], max_skipped_keys=3)

        plaintext, bob = decrypt_message(bob, messages[2], max_skipped_keys=3)
        assert plaintext == b"M3"


class TestRejection:
    """Tests for replays and tampering."""

    def test_replay_rejected(self, states) -> None:
        """A message decrypts once only."""
        alice, bob = states
        message, _ = encrypt_message(alice, b"once")
        _, bob = decrypt_message(bob, message)

        with pytest.raises(DecryptionError):
            decrypt_message(bob, message)

    def test_replay_after_skip_rejected(self, states) -> None:
        """A skipped key is deleted once used."""
        alice, bob = states
        messages, _ = _send(alice, b"M1", b"M2")
        _, bob = decrypt_message(bob, messages[1])
        _, bob = decrypt_message(bob, messages[0])

        with pytest.raises(DecryptionError):
            decrypt_message(bob, messages[0])

    def test_every_ciphertext_bit(self, states) -> None:
        """Flipping any ciphertext bit fails authentication."""
        alice, bob = states
        message, _ = encrypt_message(alice, b"attack at dawn")

        for bit in range(len(message.ciphertext) * 8):
            tampered = EncryptedMessage(message.header, _flip_bit(message.ciphertext, bit))
            with pytest.raises(DecryptionError):
                decrypt_message(bob, tampered)

    def test_every_header_bit(self, states) -> None:
        """Flipping any header bit fails decryption."""
        alice, bob = states
        message, _ = encrypt_message(alice, b"attack at dawn")

        for bit in range(len(message.header) * 8):
            tampered = EncryptedMessage(_flip_bit(message.header, bit), message.ciphertext)
            with pytest.raises(DecryptionError):
                decrypt_message(bob, tampered)

    def test_truncated_ciphertext(self, states) -> None:
        """Ciphertexts shorter than nonce and tag are refused."""
        alice, bob = states
        message, _ = encrypt_message(alice, b"hi")

        with pytest.raises(DecryptionError, match="too short"):
            decrypt_message(bob, EncryptedMessage(message.header, message.ciphertext[:27]))

    def test_failure_leaves_state_usable(self, states) -> None:
        """The genuine message still decrypts after a forged one."""
        alice, bob = states
        message, _ = encrypt_message(alice, b"real")

        with pytest.raises(DecryptionError):
            decrypt_message(bob, EncryptedMessage(message.header, _flip_bit(message.ciphertext, 100)))

        assert decrypt_message(bob, message)[0] == b"real"


class TestStateHandling:
    """Tests for state immutability and persistence."""

    def test_input_state_not_modified(self, states) -> None:
        """encrypt and decrypt return new states and leave inputs alone."""
        alice, bob = states
        alice_before = alice.to_dict()
        bob_before = bob.to_dict()

        messages, _ = _send(alice, b"M1", b"M2")
        decrypt_message(bob, messages[1])

        assert alice.to_dict() == alice_before
        assert bob.to_dict() == bob_before

    def test_dict_roundtrip(self, states) -> None:
        """A restored state continues the conversation."""
        alice, bob = states
        messages, alice = _send(alice, b"M1", b"M2", b"M3")
        _, bob = decrypt_message(bob, messages[2])

        restored = DoubleRatchetState.from_dict(bob.to_dict())
        assert restored.skipped_keys == bob.skipped_keys

        plaintext, restored = decrypt_message(restored, messages[0])
        assert plaintext == b"M1"

        reply, restored = encrypt_message(restored, b"reply")
        assert decrypt_message(alice, reply)[0] == b"reply"

    def test_from_dict_missing_field(self, states) -> None:
        """Incomplete state data is rejected."""
        data = states[0].to_dict()
        del data["rootKey"]

        with pytest.raises(SerializationError):
            DoubleRatchetState.from_dict(data)

    def test_old_keys_not_recoverable(self, states) -> None:
        """After several DH steps nothing in the state opens old messages."""
        alice, bob = states
        old, alice = encrypt_message(alice, b"old secret")
        _, bob = decrypt_message(bob, old)
        old_root = bob.root_key

        for _ in range(3):
            message, bob = encrypt_message(bob, b"ping")
            _, alice = decrypt_message(alice, message)
            message, alice = encrypt_message(alice, b"pong")
            _, bob = decrypt_message(bob, message)

        assert bob.root_key != old_root
        assert bob.skipped_keys == {}
        with pytest.raises(DecryptionError):
            decrypt_message(bob, old)
