"""Sync protocol package."""

from ledger_sync.sync.protocol import (
    TRANSITIONS,
    InvalidTransitionError,
    SyncCancelledError,
    SyncError,
    SyncInProgressError,
    SyncSession,
)

__all__ = [
    "TRANSITIONS",
    "InvalidTransitionError",
    "SyncCancelledError",
    "SyncError",
    "SyncInProgressError",
    "SyncSession",
]
