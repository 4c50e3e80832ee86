"""Sync reconciliation with the remote record store."""

from etnopapers.sync.reconciler import ConflictDecision, SyncReconciler, SyncReport
from etnopapers.sync.status import StatusBroadcaster
from etnopapers.sync.transport import (
    HttpRemoteTransport,
    InMemoryRemoteTransport,
    PullResult,
    RemoteChange,
    RemoteConflict,
    RemoteTransport,
)

__all__ = [
    "ConflictDecision",
    "HttpRemoteTransport",
    "InMemoryRemoteTransport",
    "PullResult",
    "RemoteChange",
    "RemoteConflict",
    "RemoteTransport",
    "StatusBroadcaster",
    "SyncReconciler",
    "SyncReport",
]
