"""Custom exceptions for Email Search Agent.

Every error carries an :class:`ErrorKind` so callers can decide between
retrying, skipping an item and aborting a run without inspecting messages.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """How an error affects the pipeline."""

    TRANSIENT = "transient"
    PERMANENT_ITEM = "permanent_item"
    RUN_FATAL = "run_fatal"


class EmailSearchError(Exception):
    """Base exception for all Email Search Agent errors."""

    kind: ErrorKind = ErrorKind.RUN_FATAL

    @property
    def is_transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class ConfigurationError(EmailSearchError):
    """Exception raised for configuration related errors."""


class ValidationError(EmailSearchError):
    """Exception raised when a single item's data cannot be processed."""

    kind = ErrorKind.PERMANENT_ITEM


# Mailbox
class MailboxError(EmailSearchError):
    """Base exception for mailbox provider errors."""


class MailboxAuthError(MailboxError):
    """Credentials are expired, revoked or lack the required scope."""

    kind = ErrorKind.RUN_FATAL


class MailboxTransientError(MailboxError):
    """Network failure, provider 5xx or provider-side rate limiting."""

    kind = ErrorKind.TRANSIENT


class MailboxFetchError(MailboxError):
    """The provider rejected the request for a non-retryable reason."""

    kind = ErrorKind.PERMANENT_ITEM


# Embeddings
class EmbeddingError(EmailSearchError):
    """The embedding provider rejected an input."""

    kind = ErrorKind.PERMANENT_ITEM


class EmbeddingTransientError(EmbeddingError):
    """Timeout, rate limit or 5xx from the embedding provider."""

    kind = ErrorKind.TRANSIENT


class EmbeddingAuthError(EmbeddingError):
    """The embedding provider refused our credentials."""

    kind = ErrorKind.RUN_FATAL


# Persistence
class PersistenceError(EmailSearchError):
    """The relational backend is unavailable or rejected a write."""

    kind = ErrorKind.RUN_FATAL


class VectorStoreError(EmailSearchError):
    """Base exception for vector store operations."""

    kind = ErrorKind.RUN_FATAL


class VectorStoreTransientError(VectorStoreError):
    """Timeout, connection failure, 429 or 5xx from the vector backend."""

    kind = ErrorKind.TRANSIENT


class VectorStoreBatchError(VectorStoreError):
    """Some items of a batch upsert could not be persisted."""

    def __init__(
        self,
        failed_ids: list[str],
        saved_ids: list[str],
        cause: str,
        transient_ids: list[str] | None = None,
    ) -> None:
        super().__init__(
            f"Failed to persist {len(failed_ids)} of {len(failed_ids) + len(saved_ids)} embeddings: {cause}"
        )
        self.failed_ids = failed_ids
        self.saved_ids = saved_ids
        self.transient_ids = transient_ids or []


# Sync
class SyncError(EmailSearchError):
    """Base exception for sync runs."""


class SyncInProgressError(SyncError):
    """A sync for this user is already running."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, user_id: str) -> None:
        super().__init__(f"A sync run is already in progress for user {user_id!r}")
        self.user_id = user_id


class SyncFatalError(SyncError):
    """A run was aborted; the cursor was left untouched."""

    def __init__(self, user_id: str, cause: EmailSearchError) -> None:
        super().__init__(f"Sync for user {user_id!r} failed: {cause}")
        self.user_id = user_id
        self.cause = cause
        self.kind = cause.kind
