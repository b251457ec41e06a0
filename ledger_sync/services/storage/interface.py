"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for local ledger storage.
This allows us to:
1. Keep a persisted SQLite ledger on real clients
2. Use in-memory storage for testing
3. Keep the sync protocol decoupled from the storage implementation

CRITICAL: commit_round is the only way a sync round touches local state.
It applies the round's changes, the identifier remap, the new sync marker
and the new snapshot in ONE transaction. Either all of them land or none.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from ledger_sync.models.audit import AuditEvent
from ledger_sync.models.ledger import EntityKind, LedgerEntity, LedgerState
from ledger_sync.models.sync import IdRemap, LocalChanges, SyncMarker


class LocalStorageInterface(ABC):
    """
    Abstract interface for a client's local ledger.

    Any storage implementation (in-memory, SQLite, ...) must implement
    these methods.
    """

    @abstractmethod
    async def load_state(self) -> LedgerState:
        """
        Load the full local ledger, active and removed sets of all kinds.

        Returns:
            A copy of the ledger; mutating it does not touch storage
        """
        pass

    @abstractmethod
    async def apply(
        self,
        changes: LocalChanges,
        id_remap: IdRemap,
        baseline: Optional[LedgerState] = None,
    ) -> LedgerState:
        """
        Apply changes and an identifier remap in one transaction.

        Args:
            changes: Upserts and tombstones to apply
            id_remap: Local -> durable identifier table
            baseline: Ledger as loaded when the round started; items changed
                locally since then are left alone

        Returns:
            The ledger after the change

        Raises:
            StorageError: If the write fails (nothing is applied)
        """
        pass

    @abstractmethod
    async def get_instance_id(self) -> str:
        """
        Identifier of this local store, generated once (uuid4) and kept.

        The remote remembers identifier assignments per instance, so a
        reset or second store never inherits another one's mappings,
        even under the same client name.
        """
        pass

    @abstractmethod
    async def get_last_sync_marker(self) -> Optional[SyncMarker]:
        """
        Get the marker of the last committed sync round.

        Returns:
            The marker, or None if this client never synced
        """
        pass

    @abstractmethod
    async def set_last_sync_marker(self, marker: SyncMarker) -> None:
        """Store a new sync marker."""
        pass

    @abstractmethod
    async def load_snapshot(self) -> Optional[LedgerState]:
        """
        Load the ledger as of the last committed sync round.

        Returns:
            The snapshot, or None if this client never synced
        """
        pass

    @abstractmethod
    async def commit_round(
        self,
        changes: LocalChanges,
        id_remap: IdRemap,
        baseline: Optional[LedgerState],
        marker: SyncMarker,
        snapshot: LedgerState,
    ) -> LedgerState:
        """
        Commit a sync round atomically.

        Args:
            changes: Upserts and tombstones produced by the merge
            id_remap: Identifier assignments echoed back by the merge
            baseline: Ledger as loaded when the round started
            marker: New last-sync marker
            snapshot: Canonical ledger to diff against next round

        Returns:
            The local ledger after the commit

        Raises:
            StorageError: If the commit fails (nothing is applied)
        """
        pass

    @abstractmethod
    async def allocate_local_id(self, kind: EntityKind) -> int:
        """
        Hand out the next local (negative) identifier.

        The counter is persisted and strictly decreasing; an identifier
        is never handed out twice.
        """
        pass

    @abstractmethod
    async def put(self, kind: EntityKind, item: LedgerEntity) -> None:
        """
        Insert or overwrite an active item.

        Raises:
            StorageError: If the identifier is tombstoned or the write fails
        """
        pass

    @abstractmethod
    async def remove(self, kind: EntityKind, item_id: int) -> bool:
        """
        Tombstone an item.

        Returns:
            True if an active item was removed, False if it was already
            tombstoned or unknown (the tombstone is recorded either way)
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (one sync round).

        Args:
            correlation_id: The correlation identifier

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Args:
            limit: Maximum number of events to return

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ReferenceInUseError(StorageError):
    """Attempted to remove an item that active items still reference."""
    pass


class ProtectedItemError(StorageError):
    """Attempted to change or remove a predefined item."""
    pass
