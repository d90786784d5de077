"""Exception hierarchy shared by the mailbox layers."""

from __future__ import annotations


class MailboxError(RuntimeError):
    """Base class for failures reported back to tool callers."""


class UnknownAccountError(MailboxError):
    """Raised when a request names an account that is not configured."""

    def __init__(self, account_name: str) -> None:
        super().__init__(f"Unknown account: {account_name}")
        self.account_name = account_name


class MessageNotFoundError(MailboxError):
    """Raised when a UID does not resolve to a message in the mailbox."""

    def __init__(self, uid: int) -> None:
        super().__init__(f"Message not found: UID {uid}")
        self.uid = uid


class SearchQueryError(MailboxError):
    """Raised when search predicates cannot be expressed as IMAP keys."""


class PoolClosedError(MailboxError):
    """Raised when acquiring from a connection pool that has shut down."""


__all__ = [
    "MailboxError",
    "MessageNotFoundError",
    "PoolClosedError",
    "SearchQueryError",
    "UnknownAccountError",
]
