"""
Offline-first synchronization engine.

This module provides the data structures for queued writes:
- MutationKind / MutationState / FailureKind enums
- PendingMutation: durable local write awaiting confirmation
- ApplyResult, RemoteChange, FlushReport: result types
- RetryPolicy: exponential backoff with escalation budget

The engine components live in submodules and are imported from there:
    helpdesk_sync.sync.connectivity.ConnectivityMonitor
    helpdesk_sync.sync.queue.MutationQueue
    helpdesk_sync.sync.remote.RemoteSyncClient, HttpRemoteStore
    helpdesk_sync.sync.view.MaterializedView
    helpdesk_sync.sync.reconciler.Reconciler
"""

from helpdesk_sync.sync.retry import RetryPolicy
from helpdesk_sync.sync.types import (
    ApplyResult,
    FailureKind,
    FlushReport,
    MutationKind,
    MutationState,
    PendingMutation,
    RemoteChange,
)

__all__ = [
    "ApplyResult",
    "FailureKind",
    "FlushReport",
    "MutationKind",
    "MutationState",
    "PendingMutation",
    "RemoteChange",
    "RetryPolicy",
]
