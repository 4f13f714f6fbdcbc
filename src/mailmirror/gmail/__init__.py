"""Gmail OAuth credentials and mailbox synchronization."""

from mailmirror.gmail.client import GmailClient, GmailClientError, ProviderApiError
from mailmirror.gmail.parser import ParsedMessage, parse_message
from mailmirror.gmail.storage import MailboxStore, SyncState
from mailmirror.gmail.sync import GmailSyncEngine, SyncInProgressError, SyncResult

__all__ = [
    "GmailClient",
    "GmailClientError",
    "GmailSyncEngine",
    "MailboxStore",
    "ParsedMessage",
    "ProviderApiError",
    "SyncInProgressError",
    "SyncResult",
    "SyncState",
    "parse_message",
]
