"""Tests for message header encoding."""

import pytest

from securemsg.header import (
    EncryptedMessage,
    MessageHeader,
    encode_header,
    decode_header,
)
from securemsg.types import HEADER_SIZE, InvalidHeaderError, SerializationError


class TestEncodeHeader:
    """Tests for the 40-byte header layout."""

    def test_layout(self) -> None:
        """Key, then little-endian previous counter and message number."""
        key = bytes(range(32))
        encoded = encode_header(MessageHeader(key, previous_counter=1, message_number=0x0A0B0C0D))

        assert len(encoded) == HEADER_SIZE
        assert encoded[:32] == key
        assert encoded[32:36] == b"\x01\x00\x00\x00"
        assert encoded[36:40] == b"\x0d\x0c\x0b\x0a"

    def test_decode_inverts_encode(self) -> None:
        """decode_header reads back every field."""
        header = MessageHeader(bytes([7] * 32), previous_counter=42, message_number=0xFFFFFFFF)

        assert decode_header(encode_header(header)) == header

    def test_wrong_key_length(self) -> None:
        """Ratchet keys must be 32 bytes."""
        with pytest.raises(InvalidHeaderError):
            encode_header(MessageHeader(bytes(31), 0, 0))

    def test_counter_out_of_range(self) -> None:
        """Counters must fit in uint32."""
        with pytest.raises(InvalidHeaderError, match="message_number"):
            encode_header(MessageHeader(bytes(32), 0, 2**32))

        with pytest.raises(InvalidHeaderError, match="previous_counter"):
            encode_header(MessageHeader(bytes(32), -1, 0))

    @pytest.mark.parametrize("size", [0, 39, 41])
    def test_decode_wrong_size(self, size: int) -> None:
        """Only exactly 40 bytes decode."""
        with pytest.raises(InvalidHeaderError):
            decode_header(bytes(size))


class TestEncryptedMessage:
    """Tests for the message wire form."""

    def test_dict_roundtrip(self) -> None:
        """Messages survive to_dict/from_dict."""
        message = EncryptedMessage(header=bytes(40), ciphertext=b"\x01" * 30)

        assert EncryptedMessage.from_dict(message.to_dict()) == message

    def test_short_header_rejected(self) -> None:
        """A truncated header fails to decode."""
        data = EncryptedMessage(header=bytes(40), ciphertext=b"x").to_dict()
        data["header"] = "AAAA"

        with pytest.raises(SerializationError, match="header"):
            EncryptedMessage.from_dict(data)

    def test_missing_ciphertext(self) -> None:
        """Both fields are required."""
        with pytest.raises(SerializationError, match="ciphertext"):
            EncryptedMessage.from_dict({"header": "A" * 54 + "=="})
