"""Sync run state machine.

A run moves through these states for every batch of fetched messages::

    Idle -> Fetching -> Classifying -> Chunking -> Persisting -> Embedding
         -> Persisting -> CursorCommit -> Fetching ... -> Idle

Rows are persisted before they are embedded, so the second ``Persisting``
stores embeddings. After the mailbox stream ends the run may go
``Fetching -> Embedding`` to retry the pending backlog. ``Failed`` is
reachable from every state.
"""

from __future__ import annotations

from enum import Enum

import structlog

from email_search_agent.exceptions import SyncError

logger = structlog.get_logger()


class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    CURSOR_COMMIT = "cursor_commit"
    FAILED = "failed"


_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.FETCHING}),
    SyncState.FETCHING: frozenset({SyncState.CLASSIFYING, SyncState.EMBEDDING, SyncState.IDLE}),
    SyncState.CLASSIFYING: frozenset({SyncState.CHUNKING}),
    SyncState.CHUNKING: frozenset({SyncState.PERSISTING}),
    SyncState.PERSISTING: frozenset(
        {SyncState.EMBEDDING, SyncState.CURSOR_COMMIT, SyncState.IDLE}
    ),
    SyncState.EMBEDDING: frozenset({SyncState.PERSISTING}),
    SyncState.CURSOR_COMMIT: frozenset({SyncState.FETCHING}),
    SyncState.FAILED: frozenset({SyncState.IDLE}),
}


class InvalidStateTransition(SyncError):
    """A run tried to move between two states that are not connected."""

    def __init__(self, current: SyncState, target: SyncState) -> None:
        super().__init__(f"Invalid sync transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class SyncStateMachine:
    """Tracks and validates the state of one sync run."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self.state = SyncState.IDLE
        self.history: list[SyncState] = [SyncState.IDLE]

    def can_transition(self, target: SyncState) -> bool:
        if target is SyncState.FAILED:
            return self.state is not SyncState.FAILED
        return target in _TRANSITIONS[self.state]

    def transition(self, target: SyncState) -> None:
        if not self.can_transition(target):
            raise InvalidStateTransition(self.state, target)
        logger.debug(
            "sync_state_transition",
            user_id=self.user_id,
            from_state=self.state.value,
            to_state=target.value,
        )
        self.state = target
        self.history.append(target)

    def fail(self) -> None:
        if self.state is not SyncState.FAILED:
            self.transition(SyncState.FAILED)
