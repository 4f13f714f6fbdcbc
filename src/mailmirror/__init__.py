"""mailmirror: encrypted Gmail OAuth credentials and an incremental local mailbox mirror."""

__version__ = "0.1.0"
