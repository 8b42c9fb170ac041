"""Shared fixtures for securemsg tests."""

import pytest

from securemsg.identity import generate_device_identity
from securemsg.sdk import MessageEncryptionSDK, SDKConfig


@pytest.fixture
def alice_identity():
    """Alice's device identity with 100 one-time prekeys."""
    return generate_device_identity("alice-device", 100)


@pytest.fixture
def bob_identity():
    """Bob's device identity with 100 one-time prekeys."""
    return generate_device_identity("bob-device", 100)


@pytest.fixture
def small_chunk_config():
    """SDK config with tiny chunks so multi-chunk files stay small."""
    return SDKConfig(chunk_size=16)


@pytest.fixture
def connected_sdks(alice_identity, bob_identity):
    """Alice and Bob SDKs with a completed handshake."""
    alice = MessageEncryptionSDK(alice_identity)
    bob = MessageEncryptionSDK(bob_identity)

    init = alice.initialize_session(bob.create_pre_key_bundle())
    bob.accept_session(init)
    return alice, bob
