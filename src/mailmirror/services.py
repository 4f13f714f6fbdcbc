"""Long-lived collaborators shared by the server, the CLI and the scheduler.

``open_services`` owns the lifecycle of the database pool and the shared
HTTP client; everything else is built from those and the settings.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from mailmirror.db import create_pool
from mailmirror.gmail.auth import GmailAuth
from mailmirror.gmail.client import GmailClient
from mailmirror.gmail.credentials import EncryptedCredentialStore, PostgresCredentialStore
from mailmirror.gmail.refresh import TokenRefresher
from mailmirror.gmail.storage import MailboxStore, ensure_mirror_schema
from mailmirror.gmail.sync import GmailSyncEngine
from mailmirror.logging import get_logger
from mailmirror.security import TokenCipher, load_key

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

    from mailmirror.config import Settings
    from mailmirror.gmail.credentials import Credential

log = get_logger("mailmirror.services")


class ConfigurationError(Exception):
    """Settings are missing or invalid for the requested operation."""


def build_cipher(settings: Settings) -> TokenCipher:
    """Token cipher keyed from configuration; the key is read once."""
    try:
        return TokenCipher(load_key(settings.encryption_key.get_secret_value()))
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc


def build_auth(settings: Settings) -> GmailAuth:
    client_secret = settings.google_client_secret
    state_secret = settings.oauth_state_secret
    try:
        return GmailAuth(
            settings.google_client_id,
            client_secret.get_secret_value() if client_secret else "",
            settings.google_redirect_uri,
            state_secret=state_secret.get_secret_value() if state_secret else "",
            timeout=settings.http_timeout,
        )
    except ValueError as exc:
        raise ConfigurationError(f"Google OAuth is not configured: {exc}") from exc


@dataclass
class Services:
    settings: Settings
    pool: asyncpg.Pool
    http_client: httpx.AsyncClient
    credentials: EncryptedCredentialStore
    auth: GmailAuth
    refresher: TokenRefresher

    def client_for(self, user_id: str) -> GmailClient:
        return GmailClient(
            user_id,
            self.refresher,
            http_client=self.http_client,
            timeout=self.settings.http_timeout,
            batch_size=self.settings.sync_batch_size,
            batch_delay=self.settings.sync_batch_delay,
        )

    def mailbox_for(self, user_id: str, account_email: str) -> MailboxStore:
        return MailboxStore(self.pool, user_id, account_email)

    def engine_for(self, user_id: str, account_email: str) -> GmailSyncEngine:
        """Build a sync engine for one mailbox."""
        return GmailSyncEngine(self.client_for(user_id), self.mailbox_for(user_id, account_email))

    def engine_for_credential(self, credential: Credential) -> GmailSyncEngine:
        return self.engine_for(credential.user_id, credential.email or "")


@asynccontextmanager
async def open_services(settings: Settings) -> AsyncIterator[Services]:
    """Open the pool and HTTP client, ensure the schema, and yield the wiring.

    Raises:
        ConfigurationError: Before any connection is opened, if the key or
            the Google OAuth client settings are unusable.
    """
    cipher = build_cipher(settings)
    auth = build_auth(settings)
    pool = await create_pool(settings.postgres_dsn)
    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout) as http_client:
            credentials = EncryptedCredentialStore(PostgresCredentialStore(pool), cipher)
            await credentials.ensure_schema()
            await ensure_mirror_schema(pool)
            refresher = TokenRefresher(
                credentials, auth, buffer_seconds=settings.token_expiry_buffer_seconds
            )
            yield Services(
                settings=settings,
                pool=pool,
                http_client=http_client,
                credentials=credentials,
                auth=auth,
                refresher=refresher,
            )
    finally:
        await pool.close()
        log.info("services_closed")
