"""Access-token refresh for stored Google credentials."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING

from mailmirror.constants import (
    DEFAULT_TOKEN_LIFETIME_SECONDS,
    GOOGLE_PROVIDER,
    TOKEN_EXPIRY_BUFFER_SECONDS,
)
from mailmirror.logging import get_logger

if TYPE_CHECKING:
    from mailmirror.gmail.auth import GmailAuth
    from mailmirror.gmail.credentials import EncryptedCredentialStore

log = get_logger("mailmirror.gmail.refresh")


class TokenRefresher:
    """Hands out access tokens, refreshing them shortly before they expire.

    The stored credential is only rewritten after a successful refresh; a
    failed refresh raises :class:`~mailmirror.gmail.auth.TokenRefreshError`
    and leaves the row untouched.
    """

    def __init__(
        self,
        store: EncryptedCredentialStore,
        auth: GmailAuth,
        *,
        buffer_seconds: int = TOKEN_EXPIRY_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._auth = auth
        self._buffer_seconds = buffer_seconds
        self._clock = clock

    async def get_valid_access_token(
        self, user_id: str, provider: str = GOOGLE_PROVIDER
    ) -> str | None:
        """Return a usable access token, or ``None`` if the user must re-authorize."""
        credential = await self._store.load_for_user(user_id, provider)
        if credential is None:
            log.warning("credential_not_found", user_id=user_id, provider=provider)
            return None
        if not credential.refresh_token:
            log.warning("refresh_token_missing", user_id=user_id, provider=provider)
            return None

        now = self._clock()
        if not credential.is_expired(now, self._buffer_seconds):
            return credential.access_token

        log.info("access_token_expired", user_id=user_id, provider=provider)
        tokens = await self._auth.refresh_access_token(credential.refresh_token)

        expires_in = int(tokens.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        refreshed = replace(
            credential,
            access_token=tokens["access_token"],
            # Google only sometimes rotates the refresh token
            refresh_token=tokens.get("refresh_token") or credential.refresh_token,
            expires_at=int(now) + expires_in,
            token_type=tokens.get("token_type", credential.token_type),
            scope=tokens.get("scope", credential.scope),
        )
        await self._store.save(refreshed)
        log.info("access_token_refreshed", user_id=user_id, provider=provider)
        return refreshed.access_token
