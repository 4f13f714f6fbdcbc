"""PostgreSQL mirror of one Gmail mailbox.

Follows the same asyncpg.Pool pattern as the credential store: the pool is
created by the entry point and handed in. A ``MailboxStore`` is scoped to a
single ``(user_id, account_email)`` pair; every statement filters on both.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from mailmirror.constants import NO_SUBJECT
from mailmirror.db import translate_errors
from mailmirror.logging import get_logger

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

    from mailmirror.gmail.parser import AttachmentMeta, ParsedMessage

log = get_logger("mailmirror.gmail.storage")

# A sync flag older than this is treated as left behind by a dead process.
DEFAULT_SYNC_LEASE_SECONDS = 3600

GMAIL_MIRROR_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS gmail_threads (
    id                 TEXT         NOT NULL,
    user_id            TEXT         NOT NULL,
    account_email      TEXT         NOT NULL,
    subject            TEXT         NOT NULL DEFAULT '',
    snippet            TEXT         NOT NULL DEFAULT '',
    last_message_date  TIMESTAMPTZ  NOT NULL,
    message_count      INTEGER      NOT NULL DEFAULT 0,
    has_unread         BOOLEAN      NOT NULL DEFAULT FALSE,
    is_starred         BOOLEAN      NOT NULL DEFAULT FALSE,
    is_important       BOOLEAN      NOT NULL DEFAULT FALSE,
    created_at         TIMESTAMPTZ  NOT NULL DEFAULT now(),
    updated_at         TIMESTAMPTZ  NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, account_email, id)
);

CREATE TABLE IF NOT EXISTS gmail_messages (
    id              TEXT         NOT NULL,
    user_id         TEXT         NOT NULL,
    account_email   TEXT         NOT NULL,
    thread_id       TEXT         NOT NULL,
    subject         TEXT,
    snippet         TEXT,
    sender          TEXT,
    to_addresses    TEXT[]       NOT NULL DEFAULT '{}',
    cc_addresses    TEXT[]       NOT NULL DEFAULT '{}',
    bcc_addresses   TEXT[]       NOT NULL DEFAULT '{}',
    body_text       TEXT,
    body_html       TEXT,
    label_ids       TEXT[]       NOT NULL DEFAULT '{}',
    history_id      TEXT,
    internal_date   TIMESTAMPTZ  NOT NULL,
    is_read         BOOLEAN      NOT NULL DEFAULT FALSE,
    is_starred      BOOLEAN      NOT NULL DEFAULT FALSE,
    is_important    BOOLEAN      NOT NULL DEFAULT FALSE,
    is_draft        BOOLEAN      NOT NULL DEFAULT FALSE,
    is_sent         BOOLEAN      NOT NULL DEFAULT FALSE,
    is_trash        BOOLEAN      NOT NULL DEFAULT FALSE,
    created_at      TIMESTAMPTZ  NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ  NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, account_email, id),
    FOREIGN KEY (user_id, account_email, thread_id)
        REFERENCES gmail_threads (user_id, account_email, id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_gmail_messages_thread
    ON gmail_messages (user_id, account_email, thread_id);
CREATE INDEX IF NOT EXISTS idx_gmail_messages_date
    ON gmail_messages (user_id, account_email, internal_date DESC);

CREATE TABLE IF NOT EXISTS gmail_attachments (
    user_id         TEXT         NOT NULL,
    account_email   TEXT         NOT NULL,
    message_id      TEXT         NOT NULL,
    attachment_id   TEXT         NOT NULL,
    filename        TEXT         NOT NULL,
    mime_type       TEXT         NOT NULL,
    size            BIGINT       NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, account_email, message_id, attachment_id),
    FOREIGN KEY (user_id, account_email, message_id)
        REFERENCES gmail_messages (user_id, account_email, id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS gmail_sync_state (
    user_id         TEXT         NOT NULL,
    account_email   TEXT         NOT NULL,
    last_synced_at  TIMESTAMPTZ,
    history_id      TEXT,
    is_syncing      BOOLEAN      NOT NULL DEFAULT FALSE,
    last_error      TEXT,
    updated_at      TIMESTAMPTZ  NOT NULL DEFAULT now(),
    PRIMARY KEY (user_id, account_email)
);
"""

_SYNC_STATE_FIELDS = frozenset({"last_synced_at", "history_id", "is_syncing", "last_error"})


async def ensure_mirror_schema(pool: asyncpg.Pool) -> None:
    """Create the mirror tables if they don't exist."""
    with translate_errors("ensure_mirror_schema"):
        async with pool.acquire() as conn:
            await conn.execute(GMAIL_MIRROR_SCHEMA_SQL)
    log.info("gmail_mirror_schema_ensured")


@dataclass
class SyncState:
    """Resumption checkpoint for one mailbox."""

    user_id: str
    account_email: str
    last_synced_at: datetime | None = None
    history_id: str | None = None
    is_syncing: bool = False
    last_error: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "account_email": self.account_email,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "history_id": self.history_id,
            "is_syncing": self.is_syncing,
            "last_error": self.last_error,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class MailboxStore:
    """Persistence operations the sync engine needs, for one mailbox."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        user_id: str,
        account_email: str,
        *,
        lease_seconds: int = DEFAULT_SYNC_LEASE_SECONDS,
    ) -> None:
        if not user_id or not account_email:
            raise ValueError("user_id and account_email are required")
        self._pool = pool
        self.user_id = user_id
        self.account_email = account_email
        self._lease_seconds = lease_seconds

    async def ensure_schema(self) -> None:
        """Create the mirror tables if they don't exist."""
        await ensure_mirror_schema(self._pool)

    # ------------------------------------------------------------------
    # Threads and messages
    # ------------------------------------------------------------------

    async def message_exists(self, message_id: str) -> bool:
        with translate_errors("message_exists"):
            async with self._pool.acquire() as conn:
                found = await conn.fetchval(
                    """
                    SELECT 1 FROM gmail_messages
                    WHERE user_id = $1 AND account_email = $2 AND id = $3
                    """,
                    self.user_id,
                    self.account_email,
                    message_id,
                )
        return found is not None

    async def find_thread_last_message_date(self, thread_id: str) -> datetime | None:
        with translate_errors("find_thread_last_message_date"):
            async with self._pool.acquire() as conn:
                value: datetime | None = await conn.fetchval(
                    """
                    SELECT last_message_date FROM gmail_threads
                    WHERE user_id = $1 AND account_email = $2 AND id = $3
                    """,
                    self.user_id,
                    self.account_email,
                    thread_id,
                )
        return value

    async def upsert_thread(
        self,
        message: ParsedMessage,
        *,
        is_new_message: bool,
        advance_date: bool,
    ) -> None:
        """Create the thread or fold ``message`` into it.

        ``advance_date`` lets the newest message set the date, subject and
        snippet; the SQL guard keeps the date from moving backwards even if
        two writers race. ``message_count`` only grows for new messages.
        """
        with translate_errors("upsert_thread"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO gmail_threads
                        (id, user_id, account_email, subject, snippet,
                         last_message_date, message_count,
                         has_unread, is_starred, is_important)
                    VALUES ($1, $2, $3, $4, $5, $6, 1, $7, $8, $9)
                    ON CONFLICT (user_id, account_email, id) DO UPDATE SET
                        subject = CASE WHEN $10 THEN EXCLUDED.subject
                                       ELSE gmail_threads.subject END,
                        snippet = CASE WHEN $10 THEN EXCLUDED.snippet
                                       ELSE gmail_threads.snippet END,
                        last_message_date = GREATEST(
                            gmail_threads.last_message_date,
                            CASE WHEN $10 THEN EXCLUDED.last_message_date
                                 ELSE gmail_threads.last_message_date END
                        ),
                        message_count = gmail_threads.message_count
                                        + CASE WHEN $11 THEN 1 ELSE 0 END,
                        updated_at = now()
                    """,
                    message.thread_id,
                    self.user_id,
                    self.account_email,
                    message.subject or NO_SUBJECT,
                    message.snippet or "",
                    message.date,
                    not message.is_read,
                    message.is_starred,
                    message.is_important,
                    advance_date,
                    is_new_message,
                )

    async def upsert_message(self, message: ParsedMessage) -> None:
        """Insert or overwrite a message row keyed by message id."""
        with translate_errors("upsert_message"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO gmail_messages
                        (id, user_id, account_email, thread_id, subject, snippet,
                         sender, to_addresses, cc_addresses, bcc_addresses,
                         body_text, body_html, label_ids, history_id, internal_date,
                         is_read, is_starred, is_important, is_draft, is_sent, is_trash)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12,
                            $13, $14, $15, $16, $17, $18, $19, $20, $21)
                    ON CONFLICT (user_id, account_email, id) DO UPDATE SET
                        thread_id = EXCLUDED.thread_id,
                        subject = EXCLUDED.subject,
                        snippet = EXCLUDED.snippet,
                        sender = EXCLUDED.sender,
                        to_addresses = EXCLUDED.to_addresses,
                        cc_addresses = EXCLUDED.cc_addresses,
                        bcc_addresses = EXCLUDED.bcc_addresses,
                        body_text = EXCLUDED.body_text,
                        body_html = EXCLUDED.body_html,
                        label_ids = EXCLUDED.label_ids,
                        history_id = EXCLUDED.history_id,
                        internal_date = EXCLUDED.internal_date,
                        is_read = EXCLUDED.is_read,
                        is_starred = EXCLUDED.is_starred,
                        is_important = EXCLUDED.is_important,
                        is_draft = EXCLUDED.is_draft,
                        is_sent = EXCLUDED.is_sent,
                        is_trash = EXCLUDED.is_trash,
                        updated_at = now()
                    """,
                    message.id,
                    self.user_id,
                    self.account_email,
                    message.thread_id,
                    message.subject,
                    message.snippet,
                    message.sender,
                    message.to,
                    message.cc,
                    message.bcc,
                    message.body_text,
                    message.body_html,
                    message.label_ids,
                    message.history_id,
                    message.date,
                    message.is_read,
                    message.is_starred,
                    message.is_important,
                    message.is_draft,
                    message.is_sent,
                    message.is_trash,
                )

    async def refresh_thread_flags(self, thread_id: str) -> None:
        """Recompute the thread's unread/starred/important flags from its messages."""
        with translate_errors("refresh_thread_flags"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE gmail_threads t SET
                        has_unread = agg.has_unread,
                        is_starred = agg.is_starred,
                        is_important = agg.is_important,
                        updated_at = now()
                    FROM (
                        SELECT COALESCE(bool_or(NOT is_read), FALSE) AS has_unread,
                               COALESCE(bool_or(is_starred), FALSE) AS is_starred,
                               COALESCE(bool_or(is_important), FALSE) AS is_important
                        FROM gmail_messages
                        WHERE user_id = $1 AND account_email = $2 AND thread_id = $3
                    ) agg
                    WHERE t.user_id = $1 AND t.account_email = $2 AND t.id = $3
                    """,
                    self.user_id,
                    self.account_email,
                    thread_id,
                )

    async def upsert_attachment(self, message_id: str, attachment: AttachmentMeta) -> None:
        with translate_errors("upsert_attachment"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO gmail_attachments
                        (user_id, account_email, message_id, attachment_id,
                         filename, mime_type, size)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    ON CONFLICT (user_id, account_email, message_id, attachment_id)
                    DO UPDATE SET
                        filename = EXCLUDED.filename,
                        mime_type = EXCLUDED.mime_type,
                        size = EXCLUDED.size
                    """,
                    self.user_id,
                    self.account_email,
                    message_id,
                    attachment.attachment_id,
                    attachment.filename,
                    attachment.mime_type,
                    attachment.size,
                )

    async def delete_message(self, message_id: str) -> str | None:
        """Delete a message and return the thread it belonged to.

        An already-absent row returns ``None``.
        """
        with translate_errors("delete_message"):
            async with self._pool.acquire() as conn:
                thread_id = await conn.fetchval(
                    """
                    DELETE FROM gmail_messages
                    WHERE user_id = $1 AND account_email = $2 AND id = $3
                    RETURNING thread_id
                    """,
                    self.user_id,
                    self.account_email,
                    message_id,
                )
        return thread_id

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    async def get_sync_state(self) -> SyncState | None:
        with translate_errors("get_sync_state"):
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT * FROM gmail_sync_state
                    WHERE user_id = $1 AND account_email = $2
                    """,
                    self.user_id,
                    self.account_email,
                )
        if row is None:
            return None
        return SyncState(
            user_id=row["user_id"],
            account_email=row["account_email"],
            last_synced_at=row["last_synced_at"],
            history_id=row["history_id"],
            is_syncing=row["is_syncing"],
            last_error=row["last_error"],
            updated_at=row["updated_at"],
        )

    async def upsert_sync_state(self, **fields: Any) -> None:
        """Insert or update selected sync-state columns."""
        unknown = set(fields) - _SYNC_STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown sync state fields: {sorted(unknown)}")
        if not fields:
            return

        names = sorted(fields)
        columns = ", ".join(names)
        placeholders = ", ".join(f"${i + 3}" for i in range(len(names)))
        updates = ", ".join(f"{name} = EXCLUDED.{name}" for name in names)
        query = (
            f"INSERT INTO gmail_sync_state (user_id, account_email, {columns}) "  # nosec B608
            f"VALUES ($1, $2, {placeholders}) "
            f"ON CONFLICT (user_id, account_email) DO UPDATE SET {updates}, updated_at = now()"
        )
        with translate_errors("upsert_sync_state"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    query, self.user_id, self.account_email, *(fields[n] for n in names)
                )

    async def claim_sync(self) -> bool:
        """Atomically take the per-mailbox sync flag.

        Succeeds only if no other run holds it (or the holder's lease has
        lapsed). Clears ``last_error`` as part of the claim.
        """
        with translate_errors("claim_sync"):
            async with self._pool.acquire() as conn:
                claimed = await conn.fetchval(
                    """
                    INSERT INTO gmail_sync_state
                        (user_id, account_email, is_syncing, last_error)
                    VALUES ($1, $2, TRUE, NULL)
                    ON CONFLICT (user_id, account_email) DO UPDATE SET
                        is_syncing = TRUE,
                        last_error = NULL,
                        updated_at = now()
                    WHERE gmail_sync_state.is_syncing = FALSE
                       OR gmail_sync_state.updated_at
                          < now() - make_interval(secs => $3)
                    RETURNING TRUE
                    """,
                    self.user_id,
                    self.account_email,
                    float(self._lease_seconds),
                )
        return bool(claimed)

    async def renew_sync(self) -> None:
        """Extend the lease of the run currently holding the sync flag.

        Called between pages so a long run is never mistaken for a crashed
        one by ``claim_sync``.
        """
        with translate_errors("renew_sync"):
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE gmail_sync_state SET updated_at = now()
                    WHERE user_id = $1 AND account_email = $2 AND is_syncing = TRUE
                    """,
                    self.user_id,
                    self.account_email,
                )

    async def release_sync(
        self,
        *,
        succeeded: bool,
        history_id: str | None = None,
        last_error: str | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        """Clear the sync flag, recording the outcome of the run."""
        fields: dict[str, Any] = {"is_syncing": False, "last_error": last_error}
        if succeeded:
            fields["last_synced_at"] = synced_at
        if history_id is not None:
            fields["history_id"] = history_id
        await self.upsert_sync_state(**fields)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_messages(self, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        with translate_errors("list_messages"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, thread_id, subject, sender, snippet, internal_date,
                           is_read, is_starred, label_ids
                    FROM gmail_messages
                    WHERE user_id = $1 AND account_email = $2
                    ORDER BY internal_date DESC
                    LIMIT $3 OFFSET $4
                    """,
                    self.user_id,
                    self.account_email,
                    limit,
                    offset,
                )
        return [dict(r) for r in rows]

    async def list_threads(self, *, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        with translate_errors("list_threads"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, subject, snippet, last_message_date, message_count,
                           has_unread, is_starred, is_important
                    FROM gmail_threads
                    WHERE user_id = $1 AND account_email = $2
                    ORDER BY last_message_date DESC
                    LIMIT $3 OFFSET $4
                    """,
                    self.user_id,
                    self.account_email,
                    limit,
                    offset,
                )
        return [dict(r) for r in rows]

    async def search_messages(self, query: str, *, limit: int = 20) -> list[dict[str, Any]]:
        """Case-insensitive substring search over subject, sender, snippet and body.

        ``%`` and ``_`` in ``query`` match literally. Newest first.
        """
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with translate_errors("search_messages"):
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, thread_id, subject, sender, snippet, internal_date
                    FROM gmail_messages
                    WHERE user_id = $1 AND account_email = $2
                      AND (subject ILIKE $3 OR sender ILIKE $3
                           OR snippet ILIKE $3 OR body_text ILIKE $3)
                    ORDER BY internal_date DESC
                    LIMIT $4
                    """,
                    self.user_id,
                    self.account_email,
                    f"%{escaped}%",
                    limit,
                )
        return [dict(r) for r in rows]
