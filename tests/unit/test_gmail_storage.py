"""Unit tests for the mailbox mirror repository."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from mailmirror.db import PersistenceError
from mailmirror.gmail.parser import AttachmentMeta, ParsedMessage
from mailmirror.gmail.storage import (
    DEFAULT_SYNC_LEASE_SECONDS,
    GMAIL_MIRROR_SCHEMA_SQL,
    MailboxStore,
    SyncState,
    ensure_mirror_schema,
)

WHEN = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_mock_pool():
    """Build a mock asyncpg pool with an acquirable connection."""
    pool = AsyncMock()
    conn = AsyncMock()
    acq_cm = AsyncMock()
    acq_cm.__aenter__.return_value = conn
    pool.acquire = MagicMock(return_value=acq_cm)
    return pool, conn


def _message(**overrides) -> ParsedMessage:
    defaults = {
        "id": "m1",
        "thread_id": "t1",
        "date": WHEN,
        "subject": "Hello",
        "sender": "alice@example.com",
        "to": ["bob@example.com"],
        "snippet": "Hi Bob",
        "label_ids": ["INBOX", "UNREAD", "STARRED"],
        "history_id": "500",
    }
    defaults.update(overrides)
    return ParsedMessage(**defaults)


@pytest.fixture()
def pool_and_conn():
    return _make_mock_pool()


@pytest.fixture()
def store(pool_and_conn):
    pool, _ = pool_and_conn
    return MailboxStore(pool, "user-1", "me@example.com")


class TestConstruction:
    @pytest.mark.parametrize(("user_id", "email"), [("", "me@example.com"), ("user-1", "")])
    def test_requires_mailbox_identity(self, user_id, email):
        with pytest.raises(ValueError):
            MailboxStore(AsyncMock(), user_id, email)

    async def test_ensure_schema(self, store, pool_and_conn):
        _, conn = pool_and_conn
        await store.ensure_schema()
        conn.execute.assert_awaited_once_with(GMAIL_MIRROR_SCHEMA_SQL)

    async def test_schema_failure_translated(self):
        pool, conn = _make_mock_pool()
        conn.execute.side_effect = asyncpg.PostgresError("permission denied")
        with pytest.raises(PersistenceError, match="ensure_mirror_schema"):
            await ensure_mirror_schema(pool)

    def test_schema_cascades_deletes(self):
        assert GMAIL_MIRROR_SCHEMA_SQL.count("ON DELETE CASCADE") == 2


class TestMessages:
    async def test_message_exists(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetchval.return_value = 1
        assert await store.message_exists("m1") is True
        assert conn.fetchval.await_args.args[1:] == ("user-1", "me@example.com", "m1")

        conn.fetchval.return_value = None
        assert await store.message_exists("m2") is False

    async def test_find_thread_last_message_date(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetchval.return_value = WHEN
        assert await store.find_thread_last_message_date("t1") == WHEN

    async def test_upsert_thread_parameters(self, store, pool_and_conn):
        _, conn = pool_and_conn
        await store.upsert_thread(_message(), is_new_message=True, advance_date=False)

        sql, *args = conn.execute.await_args.args
        assert "GREATEST" in sql
        assert args == [
            "t1",
            "user-1",
            "me@example.com",
            "Hello",
            "Hi Bob",
            WHEN,
            True,  # has_unread
            True,  # starred
            False,  # important
            False,  # advance_date
            True,  # is_new_message
        ]

    async def test_upsert_thread_defaults_subject(self, store, pool_and_conn):
        _, conn = pool_and_conn
        await store.upsert_thread(
            _message(subject=None, snippet=None), is_new_message=False, advance_date=True
        )
        args = conn.execute.await_args.args
        assert args[4] == "(No subject)"
        assert args[5] == ""

    async def test_upsert_message_parameters(self, store, pool_and_conn):
        _, conn = pool_and_conn
        await store.upsert_message(_message())

        sql, *args = conn.execute.await_args.args
        assert "ON CONFLICT (user_id, account_email, id)" in sql
        assert len(args) == 21
        assert args[0] == "m1"
        assert args[3] == "t1"
        assert args[12] == ["INBOX", "UNREAD", "STARRED"]
        assert args[13] == "500"
        assert args[15:] == [False, True, False, False, False, False]

    async def test_upsert_attachment(self, store, pool_and_conn):
        _, conn = pool_and_conn
        await store.upsert_attachment(
            "m1", AttachmentMeta("att-1", "report.pdf", "application/pdf", 2048)
        )
        args = conn.execute.await_args.args[1:]
        assert args == (
            "user-1",
            "me@example.com",
            "m1",
            "att-1",
            "report.pdf",
            "application/pdf",
            2048,
        )

    async def test_refresh_thread_flags(self, store, pool_and_conn):
        _, conn = pool_and_conn
        await store.refresh_thread_flags("t1")
        sql, *args = conn.execute.await_args.args
        assert "bool_or" in sql
        assert args == ["user-1", "me@example.com", "t1"]

    async def test_delete_message_returns_thread(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetchval.return_value = "t1"

        assert await store.delete_message("m1") == "t1"

        sql, *args = conn.fetchval.await_args.args
        assert "RETURNING thread_id" in sql
        assert args == ["user-1", "me@example.com", "m1"]

    async def test_delete_absent_message(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetchval.return_value = None
        assert await store.delete_message("missing") is None

    async def test_write_failure_translated(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.execute.side_effect = asyncpg.PostgresError("deadlock detected")
        with pytest.raises(PersistenceError, match="upsert_message"):
            await store.upsert_message(_message())


class TestSyncState:
    async def test_get_missing_state(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetchrow.return_value = None
        assert await store.get_sync_state() is None

    async def test_get_state(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetchrow.return_value = {
            "user_id": "user-1",
            "account_email": "me@example.com",
            "last_synced_at": WHEN,
            "history_id": "900",
            "is_syncing": False,
            "last_error": None,
            "updated_at": WHEN,
        }

        state = await store.get_sync_state()

        assert state == SyncState("user-1", "me@example.com", WHEN, "900", False, None, WHEN)
        assert state.to_dict()["last_synced_at"] == WHEN.isoformat()

    async def test_upsert_sync_state_builds_sorted_columns(self, store, pool_and_conn):
        _, conn = pool_and_conn
        await store.upsert_sync_state(last_error="boom", history_id="42")

        sql, *args = conn.execute.await_args.args
        assert "(user_id, account_email, history_id, last_error)" in sql
        assert "VALUES ($1, $2, $3, $4)" in sql
        assert "updated_at = now()" in sql
        assert args == ["user-1", "me@example.com", "42", "boom"]

    async def test_upsert_sync_state_rejects_unknown_fields(self, store, pool_and_conn):
        _, conn = pool_and_conn
        with pytest.raises(ValueError, match="Unknown sync state fields"):
            await store.upsert_sync_state(history_id="1", user_id="other")
        conn.execute.assert_not_awaited()

    async def test_upsert_sync_state_noop_without_fields(self, store, pool_and_conn):
        _, conn = pool_and_conn
        await store.upsert_sync_state()
        conn.execute.assert_not_awaited()

    @pytest.mark.parametrize(("returned", "expected"), [(True, True), (None, False)])
    async def test_claim_sync(self, store, pool_and_conn, returned, expected):
        _, conn = pool_and_conn
        conn.fetchval.return_value = returned

        assert await store.claim_sync() is expected

        sql, *args = conn.fetchval.await_args.args
        assert "WHERE gmail_sync_state.is_syncing = FALSE" in sql
        assert args == ["user-1", "me@example.com", float(DEFAULT_SYNC_LEASE_SECONDS)]

    async def test_claim_sync_custom_lease(self):
        pool, conn = _make_mock_pool()
        conn.fetchval.return_value = True
        await MailboxStore(pool, "u", "e@x", lease_seconds=60).claim_sync()
        assert conn.fetchval.await_args.args[-1] == 60.0

    async def test_claim_takes_over_lapsed_lease(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetchval.return_value = True

        assert await store.claim_sync() is True

        sql = conn.fetchval.await_args.args[0]
        assert "gmail_sync_state.updated_at" in sql
        assert "make_interval(secs => $3)" in sql

    async def test_renew_sync_only_touches_held_flag(self, store, pool_and_conn):
        _, conn = pool_and_conn

        await store.renew_sync()

        sql, *args = conn.execute.await_args.args
        assert "SET updated_at = now()" in sql
        assert "is_syncing = TRUE" in sql
        assert args == ["user-1", "me@example.com"]

    async def test_release_success(self, store):
        store.upsert_sync_state = AsyncMock()
        await store.release_sync(succeeded=True, history_id="77", synced_at=WHEN)
        store.upsert_sync_state.assert_awaited_once_with(
            is_syncing=False, last_error=None, last_synced_at=WHEN, history_id="77"
        )

    async def test_release_failure_keeps_cursor_and_sync_time(self, store):
        store.upsert_sync_state = AsyncMock()
        await store.release_sync(succeeded=False, last_error="quota exceeded")
        store.upsert_sync_state.assert_awaited_once_with(
            is_syncing=False, last_error="quota exceeded"
        )


class TestReads:
    async def test_list_messages(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetch.return_value = [{"id": "m1"}, {"id": "m2"}]

        rows = await store.list_messages(limit=10, offset=5)

        assert rows == [{"id": "m1"}, {"id": "m2"}]
        assert conn.fetch.await_args.args[1:] == ("user-1", "me@example.com", 10, 5)

    async def test_list_threads(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetch.return_value = []
        assert await store.list_threads() == []
        assert "ORDER BY last_message_date DESC" in conn.fetch.await_args.args[0]

    async def test_search_messages(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetch.return_value = [{"id": "m1", "subject": "Quarterly report"}]

        rows = await store.search_messages("report", limit=5)

        assert rows == [{"id": "m1", "subject": "Quarterly report"}]
        sql, *args = conn.fetch.await_args.args
        for column in ("subject", "sender", "snippet", "body_text"):
            assert f"{column} ILIKE $3" in sql
        assert args == ["user-1", "me@example.com", "%report%", 5]

    async def test_search_wildcards_match_literally(self, store, pool_and_conn):
        _, conn = pool_and_conn
        conn.fetch.return_value = []

        await store.search_messages("100%_off")

        assert conn.fetch.await_args.args[3] == "%100\\%\\_off%"
        assert conn.fetch.await_args.args[4] == 20
