"""Base64 helpers for the JSON wire formats."""

import base64
import binascii
from typing import Optional

from .types import SerializationError


def b64encode(data: bytes) -> str:
    """Encode bytes as standard base64 text."""
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str, expected_size: Optional[int] = None, field: str = "value") -> bytes:
    """
    Decode standard base64 text.

    Args:
        text: Base64 string
        expected_size: If given, the exact decoded length required
        field: Name used in error messages

    Returns:
        Decoded bytes

    Raises:
        SerializationError: If the text is not valid base64 or has the wrong length
    """
    if not isinstance(text, str):
        raise SerializationError(f"{field} must be a base64 string")
    try:
        data = base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise SerializationError(f"{field} is not valid base64") from e

    if expected_size is not None and len(data) != expected_size:
        raise SerializationError(
            f"{field} must be {expected_size} bytes, got {len(data)}"
        )
    return data
