"""Helper signatures: now_ms, b64e, b64d, sha256_hex."""

import base64
import binascii
import hashlib
import time


def now_ms() -> int:
    """Returns the current time in milliseconds."""
    return int(time.time() * 1000)

def b64e(b: bytes) -> str:
    """Base64-encodes bytes into a string."""
    return base64.b64encode(b).decode('ascii')

def b64d(s: str) -> bytes:
    """
    Base64-decodes a string into bytes.
    Raises ValueError on malformed input so callers can reject peer data.
    """
    try:
        return base64.b64decode(s.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64 data: {e}") from e

def sha256_hex(data: bytes) -> str:
    """Returns the SHA-256 hash of data as a hex string."""
    return hashlib.sha256(data).hexdigest()
