"""Device-side vault synchronization."""

from __future__ import annotations

from .client import DownloadedVault, VaultAPIClient
from .decision import SyncAction, SyncBaseline, decide_sync_action
from .lock import VaultLock
from .orchestrator import CredentialContainer, SyncEvent, SyncOrchestrator, SyncResult, SyncState
from .session import SessionStore, SyncSession, open_session

__all__ = [
    # Client
    "DownloadedVault",
    "VaultAPIClient",
    # Decision
    "SyncAction",
    "SyncBaseline",
    "decide_sync_action",
    # Orchestrator
    "CredentialContainer",
    "SyncEvent",
    "SyncOrchestrator",
    "SyncResult",
    "SyncState",
    # Session
    "SessionStore",
    "SyncSession",
    "VaultLock",
    "open_session",
]
