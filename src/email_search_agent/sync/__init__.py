"""Mailbox synchronisation pipeline."""

from email_search_agent.sync.orchestrator import SyncConfig, SyncOrchestrator
from email_search_agent.sync.state import InvalidStateTransition, SyncState, SyncStateMachine

__all__ = [
    "InvalidStateTransition",
    "SyncConfig",
    "SyncOrchestrator",
    "SyncState",
    "SyncStateMachine",
]
