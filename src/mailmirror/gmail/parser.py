"""Normalization of raw Gmail API messages.

Pure functions only: nothing here performs I/O, and attachment bodies are
recorded as metadata without ever being fetched.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

from mailmirror.constants import (
    LABEL_DRAFT,
    LABEL_IMPORTANT,
    LABEL_SENT,
    LABEL_STARRED,
    LABEL_TRASH,
    LABEL_UNREAD,
)


class MessageParseError(ValueError):
    """Raised when a raw message lacks the fields needed to store it."""


@dataclass(frozen=True)
class AttachmentMeta:
    attachment_id: str
    filename: str
    mime_type: str
    size: int


@dataclass
class ParsedMessage:
    """A Gmail message reduced to the fields the mirror stores."""

    id: str
    thread_id: str
    date: datetime
    subject: str | None = None
    sender: str | None = None
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    bcc: list[str] = field(default_factory=list)
    snippet: str | None = None
    body_text: str | None = None
    body_html: str | None = None
    label_ids: list[str] = field(default_factory=list)
    history_id: str | None = None
    attachments: list[AttachmentMeta] = field(default_factory=list)

    # Flags are always recomputed from labels, never stored independently.

    @property
    def is_read(self) -> bool:
        return LABEL_UNREAD not in self.label_ids

    @property
    def is_starred(self) -> bool:
        return LABEL_STARRED in self.label_ids

    @property
    def is_important(self) -> bool:
        return LABEL_IMPORTANT in self.label_ids

    @property
    def is_draft(self) -> bool:
        return LABEL_DRAFT in self.label_ids

    @property
    def is_sent(self) -> bool:
        return LABEL_SENT in self.label_ids

    @property
    def is_trash(self) -> bool:
        return LABEL_TRASH in self.label_ids

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "subject": self.subject,
            "from": self.sender,
            "to": self.to,
            "cc": self.cc,
            "bcc": self.bcc,
            "date": self.date.isoformat(),
            "snippet": self.snippet,
            "label_ids": self.label_ids,
            "history_id": self.history_id,
            "is_read": self.is_read,
            "is_starred": self.is_starred,
            "attachments": [a.__dict__ for a in self.attachments],
        }


def parse_message(raw: dict[str, Any]) -> ParsedMessage:
    """Parse a ``format=full`` Gmail message.

    Raises:
        MessageParseError: If the message has no id or thread id.
    """
    message_id = raw.get("id")
    thread_id = raw.get("threadId")
    if not message_id or not thread_id:
        raise MessageParseError("Message is missing id or threadId")

    payload = raw.get("payload")
    if not isinstance(payload, dict):
        payload = {}
    headers = _header_map(payload.get("headers") or [])

    body_text: str | None = None
    body_html: str | None = None
    attachments: list[AttachmentMeta] = []

    def walk(part: Any) -> None:
        nonlocal body_text, body_html
        if not isinstance(part, dict):
            return
        mime_type = part.get("mimeType", "")
        body = part.get("body")
        if not isinstance(body, dict):
            body = {}

        if mime_type == "text/plain" and body.get("data") and body_text is None:
            body_text = _decode_body_data(body["data"])
        elif mime_type == "text/html" and body.get("data") and body_html is None:
            body_html = _decode_body_data(body["data"])
        elif part.get("filename") and body.get("attachmentId"):
            attachments.append(
                AttachmentMeta(
                    attachment_id=body["attachmentId"],
                    filename=part["filename"],
                    mime_type=mime_type or "application/octet-stream",
                    size=int(body.get("size") or 0),
                )
            )

        children = part.get("parts")
        for child in children if isinstance(children, list) else []:
            walk(child)

    walk(payload)

    history_id = raw.get("historyId")
    return ParsedMessage(
        id=str(message_id),
        thread_id=str(thread_id),
        date=_message_date(headers.get("date"), raw.get("internalDate")),
        subject=headers.get("subject") or None,
        sender=headers.get("from") or None,
        to=_address_list(headers.get("to")),
        cc=_address_list(headers.get("cc")),
        bcc=_address_list(headers.get("bcc")),
        snippet=raw.get("snippet") or None,
        body_text=body_text,
        body_html=body_html,
        label_ids=list(raw.get("labelIds") or []),
        history_id=str(history_id) if history_id is not None else None,
        attachments=attachments,
    )


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _header_map(headers: Any) -> dict[str, str]:
    """Lower-cased header name to value; the first occurrence wins.

    Entries that are not name/value objects are skipped.
    """
    result: dict[str, str] = {}
    if not isinstance(headers, list):
        return result
    for header in headers:
        if not isinstance(header, dict):
            continue
        name = str(header.get("name", "")).lower()
        if name and name not in result:
            result[name] = str(header.get("value") or "")
    return result


def _address_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [addr.strip() for addr in value.split(",") if addr.strip()]


def _message_date(date_header: str | None, internal_date: Any) -> datetime:
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed

    try:
        millis = int(internal_date or 0)
    except (TypeError, ValueError):
        millis = 0
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def _decode_body_data(data: str) -> str:
    """Decode base64url body data, tolerating missing padding."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""
