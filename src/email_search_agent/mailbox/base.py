"""Contract every mailbox provider implements."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from datetime import datetime

from email_search_agent.models import MailboxCredentials, MailboxMessage


class MailboxSource(ABC):
    """Read-only access to a user's mailbox.

    Implementations must:

    * yield messages in ascending ``sent_at`` order,
    * never yield a message sent before ``after``,
    * be restartable from any timestamp (at-least-once delivery; callers
      deduplicate on ``external_id``),
    * raise :class:`~email_search_agent.exceptions.MailboxAuthError`,
      :class:`~email_search_agent.exceptions.MailboxTransientError` or
      :class:`~email_search_agent.exceptions.MailboxFetchError` on failure.
    """

    @abstractmethod
    def fetch_messages_since(
        self,
        credentials: MailboxCredentials,
        after: datetime,
        folders: Sequence[str],
    ) -> AsyncIterator[MailboxMessage]:
        """Stream messages in ``folders`` sent at or after ``after``."""
        ...
