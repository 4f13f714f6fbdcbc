"""Typed view of the Gmail ``users.history.list`` response.

The API returns each history record as a loose JSON object that may carry
any combination of ``messagesAdded``, ``messagesDeleted``, ``labelsAdded``
and ``labelsRemoved``. Records are parsed here, at the client boundary, into
a list of tagged change events so the sync engine never touches raw dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class MessageAdded:
    message_id: str
    thread_id: str | None = None


@dataclass(frozen=True)
class MessageDeleted:
    message_id: str


@dataclass(frozen=True)
class LabelsAdded:
    message_id: str
    label_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class LabelsRemoved:
    message_id: str
    label_ids: tuple[str, ...] = ()


HistoryChange = Union[MessageAdded, MessageDeleted, LabelsAdded, LabelsRemoved]


@dataclass
class HistoryRecord:
    """One history entry and the changes it reports, in API order."""

    id: str
    changes: list[HistoryChange] = field(default_factory=list)

    def of_type(self, kind: type) -> list[Any]:
        return [c for c in self.changes if isinstance(c, kind)]

    def label_changed_ids(self) -> list[str]:
        """Ids touched by label changes, each once, in first-seen order."""
        seen: dict[str, None] = {}
        for change in self.changes:
            if isinstance(change, (LabelsAdded, LabelsRemoved)):
                seen.setdefault(change.message_id, None)
        return list(seen)


@dataclass
class HistoryPage:
    """One page of history plus the mailbox's current history id."""

    records: list[HistoryRecord]
    history_id: str | None
    next_page_token: str | None = None


def _message_id(entry: Any) -> str:
    if not isinstance(entry, dict):
        return ""
    message = entry.get("message") or {}
    return str(message.get("id") or "")


def parse_history_record(raw: dict[str, Any]) -> HistoryRecord:
    """Convert a raw history record into tagged changes.

    Entries without a message id are dropped.
    """
    changes: list[HistoryChange] = []

    for entry in raw.get("messagesAdded") or []:
        message_id = _message_id(entry)
        if message_id:
            thread_id = (entry.get("message") or {}).get("threadId")
            changes.append(MessageAdded(message_id, thread_id))

    for entry in raw.get("messagesDeleted") or []:
        message_id = _message_id(entry)
        if message_id:
            changes.append(MessageDeleted(message_id))

    for entry in raw.get("labelsAdded") or []:
        message_id = _message_id(entry)
        if message_id:
            changes.append(LabelsAdded(message_id, tuple(entry.get("labelIds") or ())))

    for entry in raw.get("labelsRemoved") or []:
        message_id = _message_id(entry)
        if message_id:
            changes.append(LabelsRemoved(message_id, tuple(entry.get("labelIds") or ())))

    return HistoryRecord(id=str(raw.get("id", "")), changes=changes)


def parse_history_page(data: dict[str, Any]) -> HistoryPage:
    history_id = data.get("historyId")
    return HistoryPage(
        records=[parse_history_record(r) for r in data.get("history") or []],
        history_id=str(history_id) if history_id is not None else None,
        next_page_token=data.get("nextPageToken"),
    )
