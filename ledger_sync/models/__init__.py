"""
Data Models Package

This package contains all Pydantic models used by Ledger Sync.
All data flowing through a sync round must conform to these schemas.
"""

from ledger_sync.models.ledger import (
    BALANCE_MAX,
    BALANCE_MIN,
    ENTITY_TYPES,
    INT64_MAX,
    INT64_MIN,
    MERGE_ORDER,
    PREDEFINED_CATEGORY_IDS,
    TRANSFER_INCOME_ID,
    TRANSFER_OUTCOME_ID,
    Account,
    Category,
    CategoryType,
    EntityKind,
    EntitySet,
    IdentityKind,
    LedgerEntity,
    LedgerState,
    Plan,
    Transaction,
    classify,
    compute_balances,
    find_cascade,
    find_dangling,
    is_local,
    is_tombstoned,
    iter_references,
    rewrite_references,
)
from ledger_sync.models.sync import (
    CanonicalState,
    Diff,
    IdRemap,
    KindChanges,
    KindDiff,
    LocalChanges,
    MergedRound,
    MergeResult,
    RejectedItem,
    RejectionReason,
    SyncMarker,
    SyncPhase,
    SyncReport,
)
from ledger_sync.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger entities
    "BALANCE_MAX",
    "BALANCE_MIN",
    "ENTITY_TYPES",
    "INT64_MAX",
    "INT64_MIN",
    "MERGE_ORDER",
    "PREDEFINED_CATEGORY_IDS",
    "TRANSFER_INCOME_ID",
    "TRANSFER_OUTCOME_ID",
    "Account",
    "Category",
    "CategoryType",
    "EntityKind",
    "EntitySet",
    "IdentityKind",
    "LedgerEntity",
    "LedgerState",
    "Plan",
    "Transaction",
    "classify",
    "compute_balances",
    "find_cascade",
    "find_dangling",
    "is_local",
    "is_tombstoned",
    "iter_references",
    "rewrite_references",
    # Sync models
    "CanonicalState",
    "Diff",
    "IdRemap",
    "KindChanges",
    "KindDiff",
    "LocalChanges",
    "MergedRound",
    "MergeResult",
    "RejectedItem",
    "RejectionReason",
    "SyncMarker",
    "SyncPhase",
    "SyncReport",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
