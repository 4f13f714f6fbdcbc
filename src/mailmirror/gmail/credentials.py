"""OAuth credential storage.

``PostgresCredentialStore`` is a plain asyncpg repository that stores
whatever it is given. Application code only ever talks to
``EncryptedCredentialStore``, which wraps it and is the single place where
token fields are encrypted on write and decrypted on read.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from mailmirror.constants import DEFAULT_TOKEN_LIFETIME_SECONDS, GOOGLE_PROVIDER
from mailmirror.db import translate_errors
from mailmirror.gmail.auth import OAuthError
from mailmirror.logging import get_logger
from mailmirror.security.encryption import DecryptionError, TokenCipher

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

    from mailmirror.gmail.auth import GmailAuth

log = get_logger("mailmirror.gmail.credentials")

TOKEN_COLUMNS = ("access_token", "refresh_token", "id_token")

CREDENTIALS_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS oauth_credentials (
    id                   BIGSERIAL    PRIMARY KEY,
    user_id              TEXT         NOT NULL,
    provider             TEXT         NOT NULL,
    provider_account_id  TEXT         NOT NULL,
    email                TEXT,
    access_token         TEXT,
    refresh_token        TEXT,
    id_token             TEXT,
    expires_at           BIGINT,
    token_type           TEXT,
    scope                TEXT,
    is_primary           BOOLEAN      NOT NULL DEFAULT FALSE,
    created_at           TIMESTAMPTZ  NOT NULL DEFAULT now(),
    updated_at           TIMESTAMPTZ  NOT NULL DEFAULT now(),
    UNIQUE (provider, provider_account_id)
);

CREATE INDEX IF NOT EXISTS idx_oauth_credentials_user
    ON oauth_credentials (user_id, provider);
"""


class CredentialNotFoundError(LookupError):
    """The credential does not exist or belongs to another user."""


class LastCredentialError(Exception):
    """Refused to remove the only sign-in method a user has left."""


class AccountLinkedElsewhereError(OAuthError):
    """The provider account is already linked to a different user."""


@dataclass
class Credential:
    """OAuth credential for one (user, provider, provider account)."""

    user_id: str
    provider: str
    provider_account_id: str
    email: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: int | None = None
    token_type: str | None = "Bearer"
    scope: str | None = None
    is_primary: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: float, buffer_seconds: int = 0) -> bool:
        """True when the access token is expired or inside the buffer window."""
        if self.expires_at is None:
            return True
        return now >= self.expires_at - buffer_seconds

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, omitting token material."""
        return {
            "user_id": self.user_id,
            "provider": self.provider,
            "provider_account_id": self.provider_account_id,
            "email": self.email,
            "expires_at": self.expires_at,
            "token_type": self.token_type,
            "scope": self.scope,
            "is_primary": self.is_primary,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_row(cls, row: Any) -> Credential:
        return cls(
            user_id=row["user_id"],
            provider=row["provider"],
            provider_account_id=row["provider_account_id"],
            email=row["email"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            id_token=row["id_token"],
            expires_at=row["expires_at"],
            token_type=row["token_type"],
            scope=row["scope"],
            is_primary=row["is_primary"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class MigrationStats:
    """Outcome of :func:`encrypt_legacy_tokens`."""

    total: int = 0
    already_encrypted: int = 0
    encrypted: int = 0
    errors: int = 0
    failed_accounts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "already_encrypted": self.already_encrypted,
            "encrypted": self.encrypted,
            "errors": self.errors,
            "failed_accounts": list(self.failed_accounts),
        }


class PostgresCredentialStore:
    """Raw asyncpg access to ``oauth_credentials``.

    Values are stored exactly as given; wrap with
    :class:`EncryptedCredentialStore` before use.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        """Create the credentials table if it doesn't exist."""
        with translate_errors("ensure_credentials_schema"):
            async with self._pool.acquire() as conn:
                await conn.execute(CREDENTIALS_SCHEMA_SQL)
        log.info("credentials_schema_ensured")

    async def save(self, credential: Credential) -> None:
        """Insert or update a credential keyed by (provider, provider_account_id)."""
        with translate_errors("save_credential"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO oauth_credentials
                        (user_id, provider, provider_account_id, email,
                         access_token, refresh_token, id_token, expires_at,
                         token_type, scope, is_primary)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    ON CONFLICT (provider, provider_account_id) DO UPDATE SET
                        email = EXCLUDED.email,
                        access_token = EXCLUDED.access_token,
                        refresh_token = EXCLUDED.refresh_token,
                        id_token = EXCLUDED.id_token,
                        expires_at = EXCLUDED.expires_at,
                        token_type = EXCLUDED.token_type,
                        scope = EXCLUDED.scope,
                        is_primary = EXCLUDED.is_primary,
                        updated_at = now()
                    """,
                    credential.user_id,
                    credential.provider,
                    credential.provider_account_id,
                    credential.email,
                    credential.access_token,
                    credential.refresh_token,
                    credential.id_token,
                    credential.expires_at,
                    credential.token_type,
                    credential.scope,
                    credential.is_primary,
                )

    async def load(self, provider: str, provider_account_id: str) -> Credential | None:
        with translate_errors("load_credential"):
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT * FROM oauth_credentials
                    WHERE provider = $1 AND provider_account_id = $2
                    """,
                    provider,
                    provider_account_id,
                )
        return Credential.from_row(row) if row else None

    async def load_for_user(self, user_id: str, provider: str) -> Credential | None:
        """Return the user's primary (else oldest) credential for a provider."""
        with translate_errors("load_credential_for_user"):
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT * FROM oauth_credentials
                    WHERE user_id = $1 AND provider = $2
                    ORDER BY is_primary DESC, created_at ASC
                    LIMIT 1
                    """,
                    user_id,
                    provider,
                )
        return Credential.from_row(row) if row else None

    async def list_for_user(self, user_id: str) -> list[Credential]:
        with translate_errors("list_credentials"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT * FROM oauth_credentials WHERE user_id = $1 ORDER BY created_at ASC",
                    user_id,
                )
        return [Credential.from_row(r) for r in rows]

    async def list_by_provider(self, provider: str) -> list[Credential]:
        with translate_errors("list_credentials_by_provider"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT * FROM oauth_credentials WHERE provider = $1 ORDER BY created_at ASC",
                    provider,
                )
        return [Credential.from_row(r) for r in rows]

    async def count_for_user(self, user_id: str) -> int:
        with translate_errors("count_credentials"):
            async with self._pool.acquire() as conn:
                count = await conn.fetchval(
                    "SELECT COUNT(*) FROM oauth_credentials WHERE user_id = $1",
                    user_id,
                )
        return int(count or 0)

    async def delete(self, provider: str, provider_account_id: str) -> bool:
        with translate_errors("delete_credential"):
            async with self._pool.acquire() as conn:
                result = await conn.execute(
                    """
                    DELETE FROM oauth_credentials
                    WHERE provider = $1 AND provider_account_id = $2
                    """,
                    provider,
                    provider_account_id,
                )
        return bool(result == "DELETE 1")

    async def list_with_tokens(self) -> list[Credential]:
        """All rows holding at least one token column (migration input)."""
        with translate_errors("list_credentials_with_tokens"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM oauth_credentials
                    WHERE access_token IS NOT NULL
                       OR refresh_token IS NOT NULL
                       OR id_token IS NOT NULL
                    ORDER BY id
                    """
                )
        return [Credential.from_row(r) for r in rows]

    async def update_token_columns(
        self, provider: str, provider_account_id: str, columns: dict[str, str | None]
    ) -> None:
        """Overwrite selected token columns in place."""
        unknown = set(columns) - set(TOKEN_COLUMNS)
        if unknown:
            raise ValueError(f"Not token columns: {sorted(unknown)}")
        if not columns:
            return
        names = list(columns)
        assignments = ", ".join(f"{name} = ${i + 3}" for i, name in enumerate(names))
        query = (
            f"UPDATE oauth_credentials SET {assignments}, updated_at = now() "  # nosec B608
            "WHERE provider = $1 AND provider_account_id = $2"
        )
        with translate_errors("update_token_columns"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    query, provider, provider_account_id, *(columns[n] for n in names)
                )


class EncryptedCredentialStore:
    """Credential repository that encrypts every token field at rest."""

    def __init__(self, inner: PostgresCredentialStore, cipher: TokenCipher) -> None:
        self._inner = inner
        self._cipher = cipher

    def _token_fields(self, credential: Credential) -> dict[str, Any]:
        return {name: getattr(credential, name) for name in self._cipher.sensitive_fields}

    def _seal(self, credential: Credential) -> Credential:
        return replace(credential, **self._cipher.encrypt_payload(self._token_fields(credential)))

    def _open(self, credential: Credential | None) -> Credential | None:
        if credential is None:
            return None
        return replace(credential, **self._cipher.decrypt_payload(self._token_fields(credential)))

    async def ensure_schema(self) -> None:
        await self._inner.ensure_schema()

    async def save(self, credential: Credential) -> None:
        await self._inner.save(self._seal(credential))
        log.debug(
            "credential_saved",
            user_id=credential.user_id,
            provider=credential.provider,
        )

    async def load(self, provider: str, provider_account_id: str) -> Credential | None:
        return self._open(await self._inner.load(provider, provider_account_id))

    async def load_for_user(self, user_id: str, provider: str) -> Credential | None:
        return self._open(await self._inner.load_for_user(user_id, provider))

    async def list_for_user(self, user_id: str) -> list[Credential]:
        return [c for c in map(self._open, await self._inner.list_for_user(user_id)) if c]

    async def list_by_provider(self, provider: str) -> list[Credential]:
        return [c for c in map(self._open, await self._inner.list_by_provider(provider)) if c]

    async def unlink(self, user_id: str, provider: str, provider_account_id: str) -> None:
        """Remove a linked account, keeping at least one sign-in method.

        Raises:
            CredentialNotFoundError: Unknown credential or owned by another user.
            LastCredentialError: The user has no other credential.
        """
        existing = await self._inner.load(provider, provider_account_id)
        if existing is None or existing.user_id != user_id:
            raise CredentialNotFoundError(f"{provider}:{provider_account_id}")

        if await self._inner.count_for_user(user_id) <= 1:
            raise LastCredentialError(
                "Cannot disconnect your only linked account. "
                "You need at least one account to sign in."
            )

        await self._inner.delete(provider, provider_account_id)
        log.info("credential_unlinked", user_id=user_id, provider=provider)


async def link_account(
    auth: GmailAuth,
    store: EncryptedCredentialStore,
    user_id: str,
    code: str,
    *,
    clock: Callable[[], float] = time.time,
) -> Credential:
    """Complete the OAuth callback: exchange the code and store the credential.

    The first credential a user links becomes their primary one. A
    re-link that omits the refresh token keeps the stored one. An account
    owned by another user is refused with ``AccountLinkedElsewhereError``.
    """
    tokens = await auth.exchange_code(code)
    access_token = tokens.get("access_token")
    if not access_token:
        raise OAuthError("Token exchange returned no access_token")
    account_id, email = await auth.get_user_email(access_token)

    owner = await store.load(GOOGLE_PROVIDER, account_id)
    if owner is not None and owner.user_id != user_id:
        log.warning("account_link_refused", user_id=user_id, provider=GOOGLE_PROVIDER)
        raise AccountLinkedElsewhereError("This Google account is already linked to another user")

    existing_accounts = await store.list_for_user(user_id)
    previous = next(
        (
            c
            for c in existing_accounts
            if c.provider == GOOGLE_PROVIDER and c.provider_account_id == account_id
        ),
        None,
    )

    credential = Credential(
        user_id=user_id,
        provider=GOOGLE_PROVIDER,
        provider_account_id=account_id,
        email=email,
        access_token=access_token,
        refresh_token=tokens.get("refresh_token") or (previous.refresh_token if previous else None),
        id_token=tokens.get("id_token"),
        expires_at=int(clock()) + int(tokens.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS),
        token_type=tokens.get("token_type", "Bearer"),
        scope=tokens.get("scope"),
        is_primary=previous.is_primary if previous else not existing_accounts,
    )
    await store.save(credential)
    log.info("account_linked", user_id=user_id, provider=GOOGLE_PROVIDER)
    return credential


async def encrypt_legacy_tokens(
    inner: PostgresCredentialStore, cipher: TokenCipher
) -> MigrationStats:
    """Encrypt plaintext token columns left over from before encryption.

    Safe to re-run: values that already look encrypted are skipped.
    """
    stats = MigrationStats()
    credentials = await inner.list_with_tokens()
    stats.total = len(credentials)
    log.info("token_migration_started", total=stats.total)

    for credential in credentials:
        label = f"{credential.provider}:{credential.provider_account_id}"
        updates: dict[str, str | None] = {}
        for column in TOKEN_COLUMNS:
            value = getattr(credential, column)
            if not value:
                continue
            if cipher.is_encrypted(value):
                stats.already_encrypted += 1
                continue
            updates[column] = cipher.encrypt_value(value)

        if not updates:
            continue

        try:
            for column, sealed in updates.items():
                if cipher.decrypt_value(sealed) != getattr(credential, column):
                    raise DecryptionError(f"Verification failed for {column}")
            await inner.update_token_columns(
                credential.provider, credential.provider_account_id, updates
            )
        except Exception as exc:
            stats.errors += 1
            stats.failed_accounts.append(label)
            log.error("token_migration_row_failed", account=label, error=str(exc))
            continue

        stats.encrypted += 1
        log.info("token_migration_row_encrypted", account=label, columns=sorted(updates))

    log.info("token_migration_finished", **stats.to_dict())
    return stats
