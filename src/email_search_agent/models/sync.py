"""Sync bookkeeping models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Outcome of the last sync run for a user."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class SyncCursor(BaseModel):
    """Per-user boundary between synced and not-yet-synced mail."""

    user_id: str
    last_synced_at: datetime | None = None
    last_run_status: RunStatus | None = None
    updated_at: datetime | None = None


class SyncSummary(BaseModel):
    """What one sync run did. Returned even when some items failed."""

    user_id: str
    status: RunStatus = RunStatus.SUCCESS
    processed: int = Field(default=0, description="New IndexedEmail rows created")
    vectorized: int = Field(default=0, description="Rows embedded during this run")
    filtered: int = Field(default=0, description="New rows excluded from embedding")
    failed: int = Field(default=0, description="Items whose embedding failed")
    skipped: int = Field(default=0, description="Duplicates of already-indexed messages")
    backlog_vectorized: int = Field(default=0, description="Earlier pending rows embedded now")
    from_date: datetime
    cursor: datetime | None = None

    def as_trigger_response(self) -> dict[str, object]:
        """Shape expected by the sync trigger surface."""

        return {"emailsProcessed": self.processed, "fromDate": self.from_date.isoformat()}
