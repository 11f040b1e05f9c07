"""
Sync module.

Replays queued local mutations against the remote data service and
tracks connectivity triggers.
"""

from .connectivity import ConnectivityMonitor, TriggerReason
from .engine import (
    IssueKind,
    SyncEngine,
    SyncIssue,
    SyncResult,
    SyncState,
    SyncStatus,
    classify_error,
)

__all__ = [
    "ConnectivityMonitor",
    "TriggerReason",
    "SyncEngine",
    "SyncState",
    "SyncResult",
    "SyncStatus",
    "SyncIssue",
    "IssueKind",
    "classify_error",
]
