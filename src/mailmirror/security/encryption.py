"""AES-256-GCM encryption for OAuth token fields.

Each value is encrypted with a fresh 96-bit nonce; the stored form is
``base64(nonce || ciphertext || tag)``. GCM authenticates the data, so a
wrong key or any modified byte makes decryption fail loudly instead of
returning garbage.
"""

from __future__ import annotations

import base64
import binascii
import os
from collections.abc import Iterable
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mailmirror.logging import get_logger

log = get_logger("mailmirror.security.encryption")

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16

TOKEN_FIELDS = frozenset({"access_token", "refresh_token", "id_token"})


class DecryptionError(ValueError):
    """Raised when a stored value cannot be decrypted.

    Indicates a key mismatch or corrupted data; never retried.
    """


class TokenCipher:
    """Encrypts and decrypts individual token values and token-bearing records."""

    def __init__(self, key: bytes, *, sensitive_fields: Iterable[str] = TOKEN_FIELDS) -> None:
        """Initialize the cipher.

        Args:
            key: 32-byte AES-256 key.
            sensitive_fields: Record keys that ``encrypt_payload`` and
                ``decrypt_payload`` transform.
        """
        if len(key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key)
        self._sensitive_fields = frozenset(sensitive_fields)

    @property
    def sensitive_fields(self) -> frozenset[str]:
        return self._sensitive_fields

    def encrypt_value(self, plaintext: str | None) -> str | None:
        """Encrypt a string; ``None`` and ``""`` map to ``None``."""
        if plaintext is None or plaintext == "":
            return None
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt_value(self, ciphertext: str | None) -> str | None:
        """Decrypt a value produced by :meth:`encrypt_value`.

        Raises:
            DecryptionError: On malformed, tampered, or wrong-key input.
        """
        if ciphertext is None or ciphertext == "":
            return None
        try:
            raw = base64.b64decode(ciphertext.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise DecryptionError("Decryption failed: value is not valid base64") from exc
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("Decryption failed: value too short")
        nonce, body = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, body, None)
        except InvalidTag as exc:
            log.error("token_decryption_failed", reason="authentication_tag_mismatch")
            raise DecryptionError(
                "Decryption failed: data is corrupted or the encryption key is wrong"
            ) from exc
        return plaintext.decode("utf-8")

    def is_encrypted(self, value: str | None) -> bool:
        """Heuristic used by the legacy-token migration.

        True for canonical base64 text long enough to hold a nonce and tag.
        """
        if not value:
            return False
        try:
            raw = base64.b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError):
            return False
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            return False
        return base64.b64encode(raw).decode("ascii") == value

    def encrypt_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``payload`` with sensitive fields encrypted."""
        result = dict(payload)
        for name in self._sensitive_fields:
            if name in result:
                result[name] = self.encrypt_value(result[name])
        return result

    def decrypt_payload(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``payload`` with sensitive fields decrypted."""
        result = dict(payload)
        for name in self._sensitive_fields:
            if name in result:
                result[name] = self.decrypt_value(result[name])
        return result
