"""Gmail API client wrapper.

Read-only async access to the Gmail REST API: listing messages, fetching
full messages, reading the history log, and the mailbox profile. The client
never retries; callers decide where a run can safely resume.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from mailmirror.constants import (
    BATCH_CHUNK_DELAY_SECONDS,
    BATCH_CHUNK_SIZE,
    GOOGLE_PROVIDER,
    HISTORY_TYPES,
    MAX_PAGE_SIZE,
)
from mailmirror.gmail.auth import AuthenticationError
from mailmirror.gmail.history import HistoryPage, parse_history_page
from mailmirror.logging import get_logger

log = get_logger("mailmirror.gmail.client")

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"


class GmailClientError(Exception):
    """Raised when Gmail API operations fail."""


class ProviderApiError(GmailClientError):
    """The Gmail API answered with a non-2xx status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Gmail API error {status}: {body}")
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:
        """Rate limiting and server errors may succeed later."""
        return self.status == 429 or self.status >= 500


class AccessTokenProvider(Protocol):
    async def get_valid_access_token(self, user_id: str, provider: str = ...) -> str | None: ...


@dataclass
class MessageList:
    messages: list[dict[str, str]] = field(default_factory=list)
    next_page_token: str | None = None
    result_size_estimate: int = 0


@dataclass
class BatchFetch:
    messages: list[dict[str, Any]] = field(default_factory=list)
    failed: dict[str, GmailClientError] = field(default_factory=dict)


@dataclass
class Profile:
    email_address: str
    messages_total: int = 0
    threads_total: int = 0
    history_id: str | None = None


class GmailClient:
    """Async Gmail API client bound to one local user.

    A bearer token is requested from the token provider for every call and
    never cached, so refreshes happen transparently between requests.
    """

    def __init__(
        self,
        user_id: str,
        token_provider: AccessTokenProvider,
        *,
        provider: str = GOOGLE_PROVIDER,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        batch_size: int = BATCH_CHUNK_SIZE,
        batch_delay: float = BATCH_CHUNK_DELAY_SECONDS,
    ) -> None:
        """Initialize the Gmail client.

        Args:
            user_id: Local user whose credential authorizes the requests.
            token_provider: Source of valid access tokens.
            provider: Credential provider name.
            http_client: Shared client owned by the caller; when omitted a
                short-lived client is opened per request.
            timeout: HTTP request timeout in seconds.
            batch_size: Messages fetched per chunk in batch_get_messages.
            batch_delay: Pause between chunks, in seconds.
        """
        if not user_id:
            raise ValueError("user_id is required")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._user_id = user_id
        self._token_provider = token_provider
        self._provider = provider
        self._http_client = http_client
        self._timeout = timeout
        self._batch_size = batch_size
        self._batch_delay = batch_delay

    async def _headers(self) -> dict[str, str]:
        """Return authorization headers with a freshly validated token."""
        token = await self._token_provider.get_valid_access_token(self._user_id, self._provider)
        if not token:
            raise AuthenticationError(f"No valid access token for user {self._user_id}")
        return {"Authorization": f"Bearer {token}"}

    async def _get(
        self, path: str, params: dict[str, Any] | list[tuple[str, Any]] | None = None
    ) -> dict[str, Any]:
        """Make an authenticated GET request."""
        url = f"{GMAIL_API_BASE}{path}"
        headers = await self._headers()
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, headers=headers, params=params)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url, headers=headers, params=params)
        except httpx.RequestError as exc:
            raise GmailClientError(f"Gmail API request failed: {exc}") from exc

        if not response.is_success:
            log.warning("gmail_api_error", path=path, status=response.status_code)
            raise ProviderApiError(response.status_code, response.text)

        result: dict[str, Any] = response.json()
        return result

    async def list_messages(
        self,
        *,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int = MAX_PAGE_SIZE,
        label_ids: Sequence[str] | None = None,
    ) -> MessageList:
        """List message ids matching a Gmail search query."""
        params: list[tuple[str, Any]] = [("maxResults", max_results)]
        if query:
            params.append(("q", query))
        if page_token:
            params.append(("pageToken", page_token))
        for label_id in label_ids or ():
            params.append(("labelIds", label_id))

        data = await self._get("/users/me/messages", params)
        result = MessageList(
            messages=data.get("messages") or [],
            next_page_token=data.get("nextPageToken"),
            result_size_estimate=int(data.get("resultSizeEstimate") or 0),
        )
        log.debug(
            "messages_listed",
            count=len(result.messages),
            has_more=result.next_page_token is not None,
        )
        return result

    async def get_message(self, message_id: str, *, fmt: str = "full") -> dict[str, Any]:
        """Get a raw message by id ("full", "metadata" or "minimal")."""
        return await self._get(f"/users/me/messages/{message_id}", {"format": fmt})

    async def batch_get_messages(self, message_ids: Sequence[str]) -> BatchFetch:
        """Fetch full messages in sequential chunks.

        Gmail has no batch get for full messages. Chunks run one after
        another with a pause in between to stay under the per-user quota.
        A message that fails to fetch is recorded in ``failed`` and the rest
        are still fetched; authentication failures propagate.
        """
        fetched = BatchFetch()
        ids = list(message_ids)
        for start in range(0, len(ids), self._batch_size):
            for message_id in ids[start : start + self._batch_size]:
                try:
                    fetched.messages.append(await self.get_message(message_id))
                except GmailClientError as exc:
                    log.warning("message_fetch_failed", message_id=message_id, error=str(exc))
                    fetched.failed[message_id] = exc
            if start + self._batch_size < len(ids):
                await asyncio.sleep(self._batch_delay)
        return fetched

    async def get_history_list(
        self,
        start_history_id: str,
        *,
        page_token: str | None = None,
        history_types: Sequence[str] = HISTORY_TYPES,
        max_results: int | None = None,
    ) -> HistoryPage:
        """Read one page of mailbox changes since ``start_history_id``."""
        params: list[tuple[str, Any]] = [("startHistoryId", start_history_id)]
        if page_token:
            params.append(("pageToken", page_token))
        if max_results:
            params.append(("maxResults", max_results))
        for history_type in history_types:
            params.append(("historyTypes", history_type))

        data = await self._get("/users/me/history", params)
        page = parse_history_page(data)
        log.debug(
            "history_page_fetched",
            records=len(page.records),
            history_id=page.history_id,
            has_more=page.next_page_token is not None,
        )
        return page

    async def get_profile(self) -> Profile:
        """Get the authenticated user's Gmail profile."""
        data = await self._get("/users/me/profile")
        history_id = data.get("historyId")
        return Profile(
            email_address=data.get("emailAddress", ""),
            messages_total=int(data.get("messagesTotal") or 0),
            threads_total=int(data.get("threadsTotal") or 0),
            history_id=str(history_id) if history_id is not None else None,
        )
