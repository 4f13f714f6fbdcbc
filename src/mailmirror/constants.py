"""Centralized constants for mailmirror."""

# OAuth
GOOGLE_PROVIDER = "google"
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
TOKEN_EXPIRY_BUFFER_SECONDS = 60

# Gmail listing
MAX_PAGE_SIZE = 100
DEFAULT_SYNC_LIMIT = 100
INITIAL_SYNC_QUERY = "newer_than:30d"

# Batch-get fan-out (the API has no batch get for full messages)
BATCH_CHUNK_SIZE = 10
BATCH_CHUNK_DELAY_SECONDS = 0.1

# History event types requested from users.history.list
HISTORY_TYPES = ("messageAdded", "messageDeleted", "labelAdded", "labelRemoved")

# System labels that drive message flags
LABEL_UNREAD = "UNREAD"
LABEL_STARRED = "STARRED"
LABEL_IMPORTANT = "IMPORTANT"
LABEL_DRAFT = "DRAFT"
LABEL_SENT = "SENT"
LABEL_TRASH = "TRASH"

NO_SUBJECT = "(No subject)"
