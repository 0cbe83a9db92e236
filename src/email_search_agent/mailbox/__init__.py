"""Mailbox provider abstraction."""

from email_search_agent.mailbox.base import MailboxSource

__all__ = ["MailboxSource"]
