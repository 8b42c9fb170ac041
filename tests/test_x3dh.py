"""Tests for the X3DH handshake."""

import pytest

import securemsg.x3dh as x3dh_module
from securemsg.identity import create_pre_key_bundle, generate_device_identity
from securemsg.keys import generate_key_pair, generate_identity_key_pair
from securemsg.signature import sign_pre_key
from securemsg.types import InvalidSignatureError, SerializationError
from securemsg.x3dh import (
    SessionInit,
    perform_x3dh_sender,
    perform_x3dh_receiver,
)


def _handshake(alice, bob, bundle):
    ephemeral = generate_key_pair()
    sender = perform_x3dh_sender(alice.identity_key_pair, ephemeral, bundle)

    one_time = None
    if bundle.one_time_pre_key_id is not None:
        one_time = bob.issued_one_time_pre_keys[bundle.one_time_pre_key_id]
    receiver = perform_x3dh_receiver(
        bob.identity_key_pair,
        bob.signed_pre_key_pair,
        one_time,
        alice.identity_key_pair.public_key,
        ephemeral.public_key,
    )
    return sender, receiver


class TestKeyAgreement:
    """Both roles derive the same keys."""

    def test_four_dh_agreement(self, alice_identity, bob_identity) -> None:
        """With a one-time prekey both sides agree."""
        bundle = create_pre_key_bundle(bob_identity)
        assert bundle.one_time_pre_key is not None

        sender, receiver = _handshake(alice_identity, bob_identity, bundle)

        assert sender.root_key == receiver.root_key
        assert sender.chain_key == receiver.chain_key
        assert len(sender.root_key) == 32
        assert len(sender.chain_key) == 32
        assert sender.root_key != sender.chain_key

    def test_three_dh_agreement(self, alice_identity) -> None:
        """Without a one-time prekey both sides still agree."""
        bob = generate_device_identity("bob-drained", 0)
        bundle = create_pre_key_bundle(bob)
        assert bundle.one_time_pre_key is None

        sender, receiver = _handshake(alice_identity, bob, bundle)

        assert sender.root_key == receiver.root_key
        assert sender.chain_key == receiver.chain_key

    def test_one_time_pre_key_changes_result(self, alice_identity, bob_identity) -> None:
        """Dropping DH4 on one side breaks agreement."""
        bundle = create_pre_key_bundle(bob_identity)
        ephemeral = generate_key_pair()

        sender = perform_x3dh_sender(alice_identity.identity_key_pair, ephemeral, bundle)
        receiver = perform_x3dh_receiver(
            bob_identity.identity_key_pair,
            bob_identity.signed_pre_key_pair,
            None,
            alice_identity.identity_key_pair.public_key,
            ephemeral.public_key,
        )

        assert sender.root_key != receiver.root_key

    def test_fresh_ephemeral_fresh_keys(self, alice_identity, bob_identity) -> None:
        """Two handshakes against the same bundle produce different keys."""
        bundle = create_pre_key_bundle(bob_identity)

        first = perform_x3dh_sender(alice_identity.identity_key_pair, generate_key_pair(), bundle)
        second = perform_x3dh_sender(alice_identity.identity_key_pair, generate_key_pair(), bundle)

        assert first.root_key != second.root_key

    def test_repr_hides_keys(self, alice_identity, bob_identity) -> None:
        """Session keys never show up in repr."""
        sender, _ = _handshake(alice_identity, bob_identity, create_pre_key_bundle(bob_identity))

        assert sender.root_key.hex() not in repr(sender)


class TestSignatureCheck:
    """The sender refuses bundles with a bad prekey signature."""

    def test_signature_from_other_identity(self, alice_identity, bob_identity) -> None:
        """A prekey signed by someone else is rejected."""
        bundle = create_pre_key_bundle(bob_identity)
        mallory = generate_identity_key_pair()
        bundle.signed_pre_key_signature = sign_pre_key(
            bundle.signed_pre_key, mallory.private_key
        )

        with pytest.raises(InvalidSignatureError):
            perform_x3dh_sender(alice_identity.identity_key_pair, generate_key_pair(), bundle)

    def test_substituted_pre_key(self, alice_identity, bob_identity) -> None:
        """Swapping the signed prekey invalidates the bundle."""
        bundle = create_pre_key_bundle(bob_identity)
        bundle.signed_pre_key = generate_key_pair().public_key

        with pytest.raises(InvalidSignatureError):
            perform_x3dh_sender(alice_identity.identity_key_pair, generate_key_pair(), bundle)

    def test_one_time_pre_key_without_id(self, alice_identity, bob_identity) -> None:
        """A bundle whose one-time prekey lacks an id is refused."""
        bundle = create_pre_key_bundle(bob_identity)
        bundle.one_time_pre_key_id = None

        with pytest.raises(ValueError, match="one-time prekey id"):
            perform_x3dh_sender(alice_identity.identity_key_pair, generate_key_pair(), bundle)

    def test_no_dh_before_verification(self, alice_identity, bob_identity, monkeypatch) -> None:
        """Verification fails before any Diffie-Hellman runs."""
        bundle = create_pre_key_bundle(bob_identity)
        bundle.signed_pre_key_signature = bytes(64)

        def fail(*args):
            raise AssertionError("DH computed before signature check")

        monkeypatch.setattr(x3dh_module, "x25519_ecdh", fail)

        with pytest.raises(InvalidSignatureError):
            perform_x3dh_sender(alice_identity.identity_key_pair, generate_key_pair(), bundle)


class TestSessionInit:
    """Tests for the handshake message wire form."""

    def test_dict_roundtrip(self) -> None:
        """SessionInit survives to_dict/from_dict."""
        init = SessionInit(
            identity_key=generate_identity_key_pair().public_key,
            ephemeral_key=generate_key_pair().public_key,
            signed_pre_key=generate_key_pair().public_key,
            one_time_pre_key_id="00112233aabbccdd",
        )

        assert SessionInit.from_dict(init.to_dict()) == init

    def test_without_one_time_pre_key(self) -> None:
        """The one-time prekey id is optional."""
        init = SessionInit(
            identity_key=bytes(32),
            ephemeral_key=bytes(32),
            signed_pre_key=bytes(32),
        )
        data = init.to_dict()

        assert "oneTimePreKeyId" not in data
        assert SessionInit.from_dict(data).one_time_pre_key_id is None

    def test_missing_field(self) -> None:
        """A handshake without an ephemeral key is malformed."""
        data = SessionInit(bytes(32), bytes(32), bytes(32)).to_dict()
        del data["ephemeralKey"]

        with pytest.raises(SerializationError, match="ephemeralKey"):
            SessionInit.from_dict(data)
