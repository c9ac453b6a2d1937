"""
Challenge material generation and comparison helpers.
"""

import base64
import binascii
import hmac
import secrets
from typing import Optional

CHALLENGE_BYTES = 32


def random_material(nbytes: int = CHALLENGE_BYTES) -> str:
    """Random bytes as unpadded web-safe base64."""
    return secrets.token_urlsafe(nbytes)


def decode_base64_any(text: str) -> Optional[bytes]:
    """
    Decode standard or web-safe base64, padded or not.

    Returns:
        The decoded bytes, or None if the text is not base64 at all
    """
    if not isinstance(text, str):
        return None
    normalized = text.strip().replace("-", "+").replace("_", "/").rstrip("=")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError):
        return None


def decode_base64_strict(text: str) -> Optional[bytes]:
    """Decode standard base64 as sent for binary artifacts."""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError):
        return None


def nonces_match(submitted: str, issued: str) -> bool:
    """
    Compare two nonces by their decoded bytes in constant time.

    Standard and web-safe alphabets, with or without padding, are equal
    when they encode the same bytes.
    """
    submitted_bytes = decode_base64_any(submitted)
    issued_bytes = decode_base64_any(issued)
    if submitted_bytes is None or issued_bytes is None:
        return False
    return hmac.compare_digest(submitted_bytes, issued_bytes)


def challenges_match(submitted: str, issued: str) -> bool:
    """Exact constant-time text comparison, no re-encoding tolerance."""
    if not isinstance(submitted, str) or not isinstance(issued, str):
        return False
    return hmac.compare_digest(submitted.encode("utf-8"), issued.encode("utf-8"))
