"""Scheduled sync across every linked Gmail account.

One account's failure is recorded in its report and never stops the loop.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mailmirror.constants import DEFAULT_SYNC_LIMIT, GOOGLE_PROVIDER
from mailmirror.gmail.sync import SyncInProgressError, SyncResult
from mailmirror.logging import get_logger
from mailmirror.utils import timed_operation

if TYPE_CHECKING:
    from mailmirror.gmail.credentials import Credential, EncryptedCredentialStore
    from mailmirror.gmail.sync import GmailSyncEngine

log = get_logger("mailmirror.gmail.scheduler")

EngineFactory = Callable[["Credential"], "GmailSyncEngine"]


@dataclass
class AccountSyncReport:
    """What happened to one account during a scheduled run."""

    user_id: str
    account_email: str
    status: str
    result: SyncResult | None = None
    error: str | None = None
    duration_ms: float | None = None

    @property
    def success(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "account_email": self.account_email,
            "status": self.status,
            "success": self.success,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


async def sync_all_accounts(
    credentials: EncryptedCredentialStore,
    engine_factory: EngineFactory,
    *,
    provider: str = GOOGLE_PROVIDER,
    max_messages: int = DEFAULT_SYNC_LIMIT,
) -> list[AccountSyncReport]:
    """Run an incremental sync for every credential of ``provider``.

    Args:
        credentials: Store to enumerate linked accounts from.
        engine_factory: Builds a sync engine for one credential.
        provider: Credential provider to sync.
        max_messages: Budget for accounts that need a cold-start full sync.

    Returns:
        One report per account that was attempted, in listing order.
    """
    accounts = await credentials.list_by_provider(provider)
    log.info("scheduled_sync_started", provider=provider, accounts=len(accounts))

    reports: list[AccountSyncReport] = []
    for credential in accounts:
        if not credential.email:
            log.warning(
                "account_without_email_skipped",
                user_id=credential.user_id,
                provider_account_id=credential.provider_account_id,
            )
            continue
        reports.append(await _sync_one(credential, engine_factory, max_messages))

    failed = sum(1 for r in reports if r.status == "failed")
    log.info(
        "scheduled_sync_finished",
        provider=provider,
        attempted=len(reports),
        failed=failed,
    )
    return reports


async def _sync_one(
    credential: Credential, engine_factory: EngineFactory, max_messages: int
) -> AccountSyncReport:
    email = credential.email or ""
    report = AccountSyncReport(user_id=credential.user_id, account_email=email, status="success")
    async with timed_operation(
        "account_sync_finished", log=log, user_id=credential.user_id, account_email=email
    ) as timing:
        try:
            engine = engine_factory(credential)
            report.result = await engine.incremental_sync(max_messages)
        except SyncInProgressError as exc:
            report.status = "skipped"
            report.error = str(exc)
        except Exception as exc:
            # Isolation boundary: one broken account must not stop the rest.
            log.exception("account_sync_failed", user_id=credential.user_id, account_email=email)
            report.status = "failed"
            report.error = str(exc) or type(exc).__name__
    report.duration_ms = timing["elapsed_ms"]
    return report
