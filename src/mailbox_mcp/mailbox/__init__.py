"""Mailbox operations exposed as protocol tools."""

from .operations import MailboxOperations, list_accounts

__all__ = ["MailboxOperations", "list_accounts"]
