"""
In-Memory Storage Implementation

Keeps the ledger, the sync bookkeeping and the audit trail in process
memory. Used by the test suite and by embedders that persist elsewhere.

Writes build the new ledger on a copy and swap it in only on success,
so a failing apply leaves the previous state untouched.
"""

from typing import Optional
from uuid import UUID, uuid4

from ledger_sync.models.audit import AuditEvent
from ledger_sync.models.ledger import EntityKind, LedgerEntity, LedgerState
from ledger_sync.models.sync import IdRemap, LocalChanges, SyncMarker
from ledger_sync.reconciliation.apply import apply_local_changes
from ledger_sync.services.storage.interface import (
    AuditStorageInterface,
    LocalStorageInterface,
    StorageError,
)


class InMemoryLedgerStorage(LocalStorageInterface):
    """Local ledger held in memory."""

    def __init__(self, state: Optional[LedgerState] = None):
        self._state = state.clone() if state is not None else LedgerState.bootstrap()
        self._marker: Optional[SyncMarker] = None
        self._snapshot: Optional[LedgerState] = None
        self._last_local_id = 0
        self._instance_id = str(uuid4())

    async def load_state(self) -> LedgerState:
        return self._state.clone()

    async def apply(
        self,
        changes: LocalChanges,
        id_remap: IdRemap,
        baseline: Optional[LedgerState] = None,
    ) -> LedgerState:
        self._state = self._applied(changes, id_remap, baseline)
        return self._state.clone()

    async def get_instance_id(self) -> str:
        return self._instance_id

    async def get_last_sync_marker(self) -> Optional[SyncMarker]:
        return self._marker

    async def set_last_sync_marker(self, marker: SyncMarker) -> None:
        self._marker = marker

    async def load_snapshot(self) -> Optional[LedgerState]:
        return self._snapshot.clone() if self._snapshot is not None else None

    async def commit_round(
        self,
        changes: LocalChanges,
        id_remap: IdRemap,
        baseline: Optional[LedgerState],
        marker: SyncMarker,
        snapshot: LedgerState,
    ) -> LedgerState:
        new_state = self._applied(changes, id_remap, baseline)

        # Nothing below can fail
        self._state = new_state
        self._marker = marker
        self._snapshot = snapshot.clone()
        return self._state.clone()

    async def allocate_local_id(self, kind: EntityKind) -> int:
        self._last_local_id -= 1
        return self._last_local_id

    async def put(self, kind: EntityKind, item: LedgerEntity) -> None:
        try:
            self._state.of(kind).put(item)
        except ValueError as e:
            raise StorageError(f"Cannot store {kind.value} {item.id}: {e}") from e

    async def remove(self, kind: EntityKind, item_id: int) -> bool:
        return self._state.of(kind).tombstone(item_id)

    def _applied(
        self,
        changes: LocalChanges,
        id_remap: IdRemap,
        baseline: Optional[LedgerState],
    ) -> LedgerState:
        try:
            return apply_local_changes(self._state, changes, id_remap, baseline)
        except ValueError as e:
            raise StorageError(f"Failed to apply changes: {e}") from e


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit trail held in memory."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
