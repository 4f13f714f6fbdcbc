"""Loading and generating the token encryption key.

The key is a 256-bit value supplied out-of-band as base64 text
(``ENCRYPTION_KEY``). It is read once at startup and never reloaded.
"""

from __future__ import annotations

import base64
import binascii
import secrets

from mailmirror.security.encryption import KEY_SIZE


def load_key(encoded: str) -> bytes:
    """Decode a base64 key and check its length.

    Raises:
        ValueError: If the value is not base64 or not 32 bytes long.
    """
    if not encoded:
        raise ValueError("ENCRYPTION_KEY is required")
    try:
        key = base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(
            "Invalid ENCRYPTION_KEY format; generate one with `mailmirror generate-key`"
        ) from exc
    if len(key) != KEY_SIZE:
        raise ValueError(f"ENCRYPTION_KEY must be {KEY_SIZE} bytes when decoded, got {len(key)}")
    return key


def generate_key() -> str:
    """Return a fresh random key, base64-encoded for the environment file."""
    return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")
