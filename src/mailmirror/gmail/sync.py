"""Full and incremental Gmail mailbox synchronization.

A run is bracketed by ``claim_sync``/``release_sync`` on the mailbox's sync
state row, so only one run per mailbox can hold it. Full sync pages through
``messages.list``; incremental sync replays ``history.list`` from the stored
cursor and checkpoints after every page. Both renew the flag's lease between
pages.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from mailmirror.constants import DEFAULT_SYNC_LIMIT, INITIAL_SYNC_QUERY, MAX_PAGE_SIZE
from mailmirror.db import PersistenceError
from mailmirror.gmail.client import GmailClientError
from mailmirror.gmail.history import HistoryPage, MessageAdded, MessageDeleted
from mailmirror.gmail.parser import ParsedMessage, parse_message
from mailmirror.logging import get_logger
from mailmirror.utils import is_newer_history_id, max_history_id

if TYPE_CHECKING:
    from mailmirror.gmail.client import GmailClient
    from mailmirror.gmail.storage import MailboxStore

log = get_logger("mailmirror.gmail.sync")


class SyncInProgressError(Exception):
    """Another run already holds the mailbox's sync flag."""


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    synced: int = 0
    errors: int = 0
    deleted: int = 0
    updated: int = 0
    history_id: str | None = None
    sync_type: str = "full"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "synced": self.synced,
            "errors": self.errors,
            "deleted": self.deleted,
            "updated": self.updated,
            "history_id": self.history_id,
            "sync_type": self.sync_type,
        }


@dataclass
class _SyncRun:
    result: SyncResult
    start_cursor: str | None


class GmailSyncEngine:
    """Mirrors one Gmail mailbox into a :class:`MailboxStore`."""

    def __init__(
        self,
        client: GmailClient,
        store: MailboxStore,
        *,
        parser: Callable[[dict[str, Any]], ParsedMessage] = parse_message,
    ) -> None:
        self._client = client
        self._store = store
        self._parse = parser

    @property
    def account_email(self) -> str:
        return self._store.account_email

    # ------------------------------------------------------------------
    # Run bracketing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _sync_run(self, sync_type: str) -> AsyncIterator[_SyncRun]:
        """Hold the mailbox's sync flag for the duration of a run.

        The flag is released on every exit path. On success the cursor moves
        to the run's history id if that is newer; on failure the error text
        is recorded and the exception re-raised.
        """
        if not await self._store.claim_sync():
            log.info("sync_already_running", account_email=self.account_email)
            raise SyncInProgressError(f"A sync is already running for {self.account_email}")

        try:
            state = await self._store.get_sync_state()
            run = _SyncRun(
                result=SyncResult(sync_type=sync_type),
                start_cursor=state.history_id if state else None,
            )
            yield run
        except BaseException as exc:
            log.error(
                "sync_failed",
                account_email=self.account_email,
                sync_type=sync_type,
                error=str(exc),
            )
            await self._store.release_sync(
                succeeded=False, last_error=str(exc) or type(exc).__name__
            )
            raise

        cursor = run.result.history_id
        if not is_newer_history_id(cursor, run.start_cursor):
            cursor = None
        await self._store.release_sync(
            succeeded=True,
            history_id=cursor,
            synced_at=datetime.now(timezone.utc),
        )
        log.info("sync_complete", account_email=self.account_email, **run.result.to_dict())

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def sync_messages(
        self,
        max_messages: int = DEFAULT_SYNC_LIMIT,
        query: str | None = None,
        is_initial_sync: bool = False,
    ) -> SyncResult:
        """Run a full sync over up to ``max_messages`` listed messages."""
        async with self._sync_run("full") as run:
            await self._full_sync(run.result, max_messages, query, is_initial_sync)
        return run.result

    async def incremental_sync(self, max_messages: int = DEFAULT_SYNC_LIMIT) -> SyncResult:
        """Apply history since the stored cursor.

        Without a cursor this falls back to a bounded initial full sync;
        ``max_messages`` only limits that fallback.
        """
        async with self._sync_run("incremental") as run:
            if run.start_cursor is None:
                log.info("no_history_cursor_running_full_sync", account_email=self.account_email)
                run.result.sync_type = "full"
                await self._full_sync(run.result, max_messages, None, True)
            else:
                await self._incremental(run.result, run.start_cursor)
        return run.result

    async def store_message(self, parsed: ParsedMessage) -> bool:
        """Persist a parsed message: thread, then message, then attachments.

        Returns:
            True when the message was not in the mirror before.
        """
        is_new = not await self._store.message_exists(parsed.id)
        current = await self._store.find_thread_last_message_date(parsed.thread_id)
        advance = current is None or parsed.date > current

        await self._store.upsert_thread(parsed, is_new_message=is_new, advance_date=advance)
        await self._store.upsert_message(parsed)
        for attachment in parsed.attachments:
            await self._store.upsert_attachment(parsed.id, attachment)
        await self._store.refresh_thread_flags(parsed.thread_id)
        return is_new

    async def get_status(self) -> dict[str, Any]:
        """Current sync state for status displays."""
        state = await self._store.get_sync_state()
        if state is None:
            return {
                "account_email": self.account_email,
                "is_syncing": False,
                "last_synced_at": None,
                "history_id": None,
                "last_error": None,
            }
        return state.to_dict()

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    async def _full_sync(
        self,
        result: SyncResult,
        max_messages: int,
        query: str | None,
        is_initial_sync: bool,
    ) -> None:
        if is_initial_sync and not query:
            query = INITIAL_SYNC_QUERY

        listed = 0
        page_token: str | None = None
        seen_history: list[str | None] = []

        while listed < max_messages:
            page = await self._client.list_messages(
                query=query,
                page_token=page_token,
                max_results=min(MAX_PAGE_SIZE, max_messages - listed),
            )
            message_ids = [m["id"] for m in page.messages if m.get("id")]
            if not message_ids:
                break
            listed += len(message_ids)

            fetched = await self._client.batch_get_messages(message_ids)
            result.errors += len(fetched.failed)
            for raw in fetched.messages:
                parsed = await self._apply_raw(raw, result)
                if parsed is not None:
                    result.synced += 1
                    seen_history.append(parsed.history_id)
            await self._store.renew_sync()

            page_token = page.next_page_token
            if not page_token:
                break

        history_id = max_history_id(seen_history)
        if history_id is None:
            # Nothing carried a history id; the profile's gives a starting point.
            profile = await self._client.get_profile()
            history_id = profile.history_id
        result.history_id = history_id

    async def _apply_raw(self, raw: dict[str, Any], result: SyncResult) -> ParsedMessage | None:
        """Parse and store one raw message, counting rather than raising failures.

        Any exception here is confined to this message; the run carries on.
        """
        message_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            parsed = self._parse(raw)
            await self.store_message(parsed)
        except Exception as exc:
            log.warning(
                "message_store_failed",
                account_email=self.account_email,
                message_id=message_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            result.errors += 1
            return None
        return parsed

    # ------------------------------------------------------------------
    # Incremental sync
    # ------------------------------------------------------------------

    async def _incremental(self, result: SyncResult, start_cursor: str) -> None:
        page_token: str | None = None
        cursor = start_cursor
        result.history_id = cursor

        while True:
            page = await self._client.get_history_list(start_cursor, page_token=page_token)
            await self._apply_history_page(page, result)
            await self._store.renew_sync()

            checkpoint = self._page_checkpoint(page)
            if is_newer_history_id(checkpoint, cursor):
                await self._store.upsert_sync_state(history_id=checkpoint)
                cursor = checkpoint
                result.history_id = cursor
                log.debug(
                    "history_checkpoint_committed",
                    account_email=self.account_email,
                    history_id=cursor,
                )

            page_token = page.next_page_token
            if not page_token:
                break

    @staticmethod
    def _page_checkpoint(page: HistoryPage) -> str | None:
        """Cursor that is safe to commit once ``page`` has been applied.

        The response's ``historyId`` is the mailbox's latest, which is only
        correct after the final page; mid-listing, the last applied record
        is the furthest point reached.
        """
        last_record = max_history_id(r.id for r in page.records)
        if page.next_page_token:
            return last_record
        return max_history_id([page.history_id, last_record])

    async def _apply_history_page(self, page: HistoryPage, result: SyncResult) -> None:
        for record in page.records:
            for added in record.of_type(MessageAdded):
                if await self._refetch(added.message_id, result):
                    result.synced += 1

            for deleted in record.of_type(MessageDeleted):
                await self._delete(deleted.message_id, result)

            # One refetch per message per record, however many label entries name it.
            for message_id in record.label_changed_ids():
                if await self._refetch(message_id, result):
                    result.updated += 1

    async def _refetch(self, message_id: str, result: SyncResult) -> bool:
        try:
            raw = await self._client.get_message(message_id)
        except GmailClientError as exc:
            log.warning(
                "message_fetch_failed",
                account_email=self.account_email,
                message_id=message_id,
                error=str(exc),
            )
            result.errors += 1
            return False
        return await self._apply_raw(raw, result) is not None

    async def _delete(self, message_id: str, result: SyncResult) -> None:
        try:
            thread_id = await self._store.delete_message(message_id)
            if thread_id is not None:
                await self._store.refresh_thread_flags(thread_id)
        except PersistenceError as exc:
            log.warning(
                "message_delete_failed",
                account_email=self.account_email,
                message_id=message_id,
                error=str(exc),
            )
            result.errors += 1
            return
        if thread_id is not None:
            result.deleted += 1
