"""
Storage Services Package

Provides abstract interfaces and concrete implementations for local
ledger storage and the audit trail: in-memory (tests, embedding) and
SQLite (persisted clients).
"""

from ledger_sync.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LocalStorageInterface,
    NotFoundError,
    ProtectedItemError,
    ReferenceInUseError,
    StorageError,
)
from ledger_sync.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
)
from ledger_sync.services.storage.sqlite import (
    SQLiteAuditStorage,
    SQLiteDatabase,
    SQLiteLedgerStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LocalStorageInterface",
    # Exceptions
    "DuplicateError",
    "NotFoundError",
    "ProtectedItemError",
    "ReferenceInUseError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    # SQLite implementation
    "SQLiteAuditStorage",
    "SQLiteDatabase",
    "SQLiteLedgerStorage",
]
