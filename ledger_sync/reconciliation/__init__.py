"""Reconciliation engine package."""

from ledger_sync.reconciliation.apply import (
    apply_local_changes,
    refresh_balances,
    remap_ledger,
)
from ledger_sync.reconciliation.engine import Reconciler

__all__ = [
    "Reconciler",
    "apply_local_changes",
    "refresh_balances",
    "remap_ledger",
]
