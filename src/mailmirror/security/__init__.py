"""Security module for mailmirror.

Provides application-layer encryption for OAuth tokens stored in PostgreSQL.
"""

from mailmirror.security.encryption import DecryptionError, TokenCipher
from mailmirror.security.keys import generate_key, load_key

__all__ = ["DecryptionError", "TokenCipher", "generate_key", "load_key"]
