"""Data models for Email Search Agent.

This package contains Pydantic models for data validation and serialization.
"""

from email_search_agent.models.index import (
    Decision,
    EmbeddingRecord,
    FilterReason,
    IndexedEmail,
    PendingItem,
    SearchResult,
    SizeCheck,
    TextChunk,
    VectorStats,
    email_row_id,
)
from email_search_agent.models.mailbox import Attachment, MailboxCredentials, MailboxMessage
from email_search_agent.models.sync import RunStatus, SyncCursor, SyncSummary

__all__ = [
    "Attachment",
    "Decision",
    "EmbeddingRecord",
    "FilterReason",
    "IndexedEmail",
    "MailboxCredentials",
    "MailboxMessage",
    "PendingItem",
    "RunStatus",
    "SearchResult",
    "SizeCheck",
    "SyncCursor",
    "SyncSummary",
    "TextChunk",
    "VectorStats",
    "email_row_id",
]
