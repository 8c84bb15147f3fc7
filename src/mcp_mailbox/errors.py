"""Error kinds raised by the mailbox core."""

from __future__ import annotations


class MailboxError(Exception):
    """Base class for every error raised by the store modules."""


class NotFoundError(MailboxError, LookupError):
    """The requested context key or message id does not exist."""


class InvalidArgumentError(MailboxError, ValueError):
    """A request was rejected before any storage transaction began."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class StorageFailureError(MailboxError):
    """The durable store failed; the operation had no visible effect."""
