"""Diff engine package."""

from ledger_sync.diff.engine import DiffEngine, diff_counts

__all__ = ["DiffEngine", "diff_counts"]
