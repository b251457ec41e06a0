"""
SQLite Storage Implementation

DESIGN DECISION: The local ledger is a single SQLite file with one table
per entity kind. Sensitive fields live in BLOB columns encrypted field by
field (see crypto.sealing), so the database file is safe to back up or
sync by other means.

SCHEMA:
- accounts(id, name, current_balance, opening_balance, removed)
- categories(id, name, category_type, removed)
- transactions(id, account_id -> accounts, category_id -> categories,
  amount, description, timestamp, removed)
- plans(id, category_id -> categories, monthly_limit, name, removed)
- sync_meta(key, value): instance id, sync marker, local id counter,
  sealed snapshot
- audit_events: append-only audit trail

Tombstones are rows with removed = 1 and their data columns cleared.
They are never deleted.

CRITICAL: Foreign keys are declared ON UPDATE CASCADE, so remapping a
local identifier to its durable one is a single primary-key UPDATE; every
reference follows. The checks are DEFERRABLE INITIALLY DEFERRED because a
round writes parents and children in one transaction.

Connections are opened per operation and closed afterwards. Each
operation is one transaction: commit on success, rollback on any error.
"""

import contextlib
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union
from uuid import UUID, uuid4

import structlog
from pydantic import ValidationError

from ledger_sync.crypto.cipher import LedgerCipher
from ledger_sync.crypto.sealing import SEALED_FIELDS, StateSealer
from ledger_sync.models.audit import (
    AuditEvent,
    AuditEventType,
    AuditSeverity,
)
from ledger_sync.models.ledger import (
    ENTITY_TYPES,
    KIND_FIELDS,
    MERGE_ORDER,
    EntityKind,
    LedgerEntity,
    LedgerState,
)
from ledger_sync.models.sync import IdRemap, LocalChanges, SyncMarker
from ledger_sync.reconciliation.apply import apply_local_changes, remap_ledger
from ledger_sync.services.storage.interface import (
    AuditStorageInterface,
    LocalStorageInterface,
    StorageError,
)


logger = structlog.get_logger("ledger_sync.storage")


SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY,
    name BLOB,
    current_balance BLOB,
    opening_balance BLOB,
    removed INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY,
    name BLOB,
    category_type TEXT,
    removed INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY,
    account_id INTEGER REFERENCES accounts(id)
        ON UPDATE CASCADE DEFERRABLE INITIALLY DEFERRED,
    category_id INTEGER REFERENCES categories(id)
        ON UPDATE CASCADE DEFERRABLE INITIALLY DEFERRED,
    amount BLOB,
    description BLOB,
    timestamp TEXT,
    removed INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS plans (
    id INTEGER PRIMARY KEY,
    category_id INTEGER REFERENCES categories(id)
        ON UPDATE CASCADE DEFERRABLE INITIALLY DEFERRED,
    monthly_limit BLOB,
    name BLOB,
    removed INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value BLOB
);

CREATE TABLE IF NOT EXISTS audit_events (
    event_id TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    event_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    ledger_id TEXT,
    client_id TEXT,
    correlation_id TEXT,
    description TEXT NOT NULL,
    details_json TEXT,
    error_code TEXT,
    error_message TEXT
);
"""

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "ledger_id",
    "client_id",
    "correlation_id",
    "description",
    "details_json",
    "error_code",
    "error_message",
]

META_MARKER = "last_sync_marker"
META_SNAPSHOT = "snapshot"
META_LOCAL_ID = "last_local_id"
META_INSTANCE = "instance_id"


def _columns(kind: EntityKind) -> list[str]:
    """Data columns of a kind's table, in model field order."""
    return [name for name in ENTITY_TYPES[kind].model_fields if name != "id"]


class SQLiteDatabase:
    """
    Connection handling shared by the ledger and audit stores.

    Creates the schema on first use.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA busy_timeout = 5000")
        return conn

    @contextlib.contextmanager
    def connect(self):
        """Yield a connection; commit on success, rollback on error, always close."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug("transaction_rolled_back", path=str(self.path), error=str(e))
            conn.rollback()
            raise
        finally:
            conn.close()


class SQLiteLedgerStorage(LocalStorageInterface):
    """
    Local ledger persisted in SQLite with encrypted columns.

    The cipher must be the one derived from the ledger password; rows
    written under another key fail to open with AuthenticationFailedError.
    """

    def __init__(
        self,
        path: Union[str, Path],
        cipher: LedgerCipher,
        database: Optional[SQLiteDatabase] = None,
    ):
        self._db = database or SQLiteDatabase(path)
        self._sealer = StateSealer(cipher)
        self._instance_id = self._initialize()

    @property
    def database(self) -> SQLiteDatabase:
        return self._db

    # =========================================================================
    # ROW CONVERSION
    # =========================================================================

    def _item_to_row(self, kind: EntityKind, item: LedgerEntity) -> list[Any]:
        """Column values in _columns() order, sealed fields encrypted."""
        sealed = SEALED_FIELDS[kind]
        public = item.model_dump(mode="json")
        return [
            self._sealer.fields.seal_value(getattr(item, name)) if name in sealed
            else public[name]
            for name in _columns(kind)
        ]

    def _row_to_item(self, kind: EntityKind, row: sqlite3.Row) -> LedgerEntity:
        sealed = SEALED_FIELDS[kind]
        values: dict[str, Any] = {"id": row["id"]}
        for name in _columns(kind):
            raw = row[name]
            values[name] = (
                self._sealer.fields.open_value(bytes(raw), sealed[name])
                if name in sealed else raw
            )
        try:
            return ENTITY_TYPES[kind].model_validate(values)
        except ValidationError as e:
            # Decrypted fine, so the row itself is bad
            raise StorageError(f"Invalid {kind.value} row {row['id']}: {e}") from e

    # =========================================================================
    # LOW-LEVEL WRITES (inside an open transaction)
    # =========================================================================

    def _write_item(self, conn: sqlite3.Connection, kind: EntityKind, item: LedgerEntity) -> None:
        table = KIND_FIELDS[kind]
        columns = _columns(kind)
        placeholders = ", ".join("?" for _ in range(len(columns) + 1))
        assignments = ", ".join(f"{name} = excluded.{name}" for name in columns)
        conn.execute(
            f"INSERT INTO {table} (id, {', '.join(columns)}, removed) "
            f"VALUES ({placeholders}, 0) "
            f"ON CONFLICT(id) DO UPDATE SET {assignments}, removed = 0",
            [item.id, *self._item_to_row(kind, item)],
        )

    def _write_tombstone(self, conn: sqlite3.Connection, kind: EntityKind, item_id: int) -> None:
        table = KIND_FIELDS[kind]
        cleared = ", ".join(f"{name} = NULL" for name in _columns(kind))
        conn.execute(
            f"INSERT INTO {table} (id, removed) VALUES (?, 1) "
            f"ON CONFLICT(id) DO UPDATE SET {cleared}, removed = 1",
            [item_id],
        )

    def _write_remap(self, conn: sqlite3.Connection, id_remap: IdRemap) -> None:
        # ON UPDATE CASCADE rewrites every reference along with the key
        for kind in MERGE_ORDER:
            table = KIND_FIELDS[kind]
            for local_id, durable_id in sorted(id_remap.mappings.get(kind, {}).items()):
                conn.execute(
                    f"UPDATE {table} SET id = ? WHERE id = ?",
                    [durable_id, local_id],
                )

    def _write_ledger_changes(
        self,
        conn: sqlite3.Connection,
        before: LedgerState,
        after: LedgerState,
    ) -> None:
        """Write every row of after that differs from before."""
        for kind in MERGE_ORDER:
            old = before.of(kind)
            new = after.of(kind)
            for item in new.sorted_active():
                if old.get(item.id) != item:
                    self._write_item(conn, kind, item)
            for item_id in sorted(new.removed - old.removed):
                self._write_tombstone(conn, kind, item_id)

    def _get_meta(self, conn: sqlite3.Connection, key: str) -> Optional[Any]:
        row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", [key]).fetchone()
        return row["value"] if row else None

    def _set_meta(self, conn: sqlite3.Connection, key: str, value: Any) -> None:
        conn.execute(
            "INSERT INTO sync_meta (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            [key, value],
        )

    def _read_state(self, conn: sqlite3.Connection) -> LedgerState:
        state = LedgerState()
        for kind in MERGE_ORDER:
            target = state.of(kind)
            rows = conn.execute(
                f"SELECT * FROM {KIND_FIELDS[kind]} ORDER BY id"
            ).fetchall()
            for row in rows:
                if row["removed"]:
                    target.removed.add(row["id"])
                else:
                    target.put(self._row_to_item(kind, row))
        return state

    def _initialize(self) -> str:
        """Create the predefined categories and the instance id of a new file."""
        with self._db.connect() as conn:
            count = conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0]
            if count == 0:
                for item in LedgerState.bootstrap().categories.sorted_active():
                    self._write_item(conn, EntityKind.CATEGORY, item)

            instance_id = self._get_meta(conn, META_INSTANCE)
            if instance_id is None:
                instance_id = str(uuid4())
                self._set_meta(conn, META_INSTANCE, instance_id)
        return instance_id

    def _apply_in(
        self,
        conn: sqlite3.Connection,
        changes: LocalChanges,
        id_remap: IdRemap,
        baseline: Optional[LedgerState],
    ) -> LedgerState:
        current = self._read_state(conn)
        result = apply_local_changes(current, changes, id_remap, baseline)
        self._write_remap(conn, id_remap)
        self._write_ledger_changes(conn, remap_ledger(current, id_remap), result)
        return result

    # =========================================================================
    # INTERFACE
    # =========================================================================

    async def load_state(self) -> LedgerState:
        with self._db.connect() as conn:
            return self._read_state(conn)

    async def apply(
        self,
        changes: LocalChanges,
        id_remap: IdRemap,
        baseline: Optional[LedgerState] = None,
    ) -> LedgerState:
        try:
            with self._db.connect() as conn:
                return self._apply_in(conn, changes, id_remap, baseline)
        except (sqlite3.Error, ValueError) as e:
            raise StorageError(f"Failed to apply changes: {e}") from e

    async def get_instance_id(self) -> str:
        return self._instance_id

    async def get_last_sync_marker(self) -> Optional[SyncMarker]:
        with self._db.connect() as conn:
            raw = self._get_meta(conn, META_MARKER)
        return SyncMarker.model_validate_json(raw) if raw is not None else None

    async def set_last_sync_marker(self, marker: SyncMarker) -> None:
        with self._db.connect() as conn:
            self._set_meta(conn, META_MARKER, marker.model_dump_json())

    async def load_snapshot(self) -> Optional[LedgerState]:
        with self._db.connect() as conn:
            raw = self._get_meta(conn, META_SNAPSHOT)
        return self._sealer.open_ledger_bytes(bytes(raw)) if raw is not None else None

    async def commit_round(
        self,
        changes: LocalChanges,
        id_remap: IdRemap,
        baseline: Optional[LedgerState],
        marker: SyncMarker,
        snapshot: LedgerState,
    ) -> LedgerState:
        # Seal before opening the transaction, so a crypto failure writes nothing
        sealed_snapshot = self._sealer.seal_ledger_bytes(snapshot)
        try:
            with self._db.connect() as conn:
                result = self._apply_in(conn, changes, id_remap, baseline)
                self._set_meta(conn, META_MARKER, marker.model_dump_json())
                self._set_meta(conn, META_SNAPSHOT, sealed_snapshot)
        except (sqlite3.Error, ValueError) as e:
            raise StorageError(f"Failed to commit sync round: {e}") from e

        logger.info(
            "round_committed_locally",
            path=str(self._db.path),
            revision=marker.revision,
            remapped=len(id_remap),
        )
        return result

    async def allocate_local_id(self, kind: EntityKind) -> int:
        with self._db.connect() as conn:
            last = self._get_meta(conn, META_LOCAL_ID)
            next_id = (int(last) if last is not None else 0) - 1
            self._set_meta(conn, META_LOCAL_ID, next_id)
        return next_id

    async def put(self, kind: EntityKind, item: LedgerEntity) -> None:
        try:
            with self._db.connect() as conn:
                row = conn.execute(
                    f"SELECT removed FROM {KIND_FIELDS[kind]} WHERE id = ?", [item.id]
                ).fetchone()
                if row is not None and row["removed"]:
                    raise StorageError(f"Cannot store {kind.value} {item.id}: identifier is tombstoned")
                self._write_item(conn, kind, item)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot store {kind.value} {item.id}: {e}") from e

    async def remove(self, kind: EntityKind, item_id: int) -> bool:
        try:
            with self._db.connect() as conn:
                row = conn.execute(
                    f"SELECT removed FROM {KIND_FIELDS[kind]} WHERE id = ?", [item_id]
                ).fetchone()
                self._write_tombstone(conn, kind, item_id)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot remove {kind.value} {item_id}: {e}") from e
        return row is not None and not row["removed"]


class SQLiteAuditStorage(AuditStorageInterface):
    """
    SQLite implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, database: SQLiteDatabase):
        self._db = database

    def _row_to_event(self, row: sqlite3.Row) -> AuditEvent:
        return AuditEvent(
            event_id=UUID(row["event_id"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            event_type=AuditEventType(row["event_type"]),
            severity=AuditSeverity(row["severity"]),
            ledger_id=row["ledger_id"] or None,
            client_id=row["client_id"] or None,
            correlation_id=UUID(row["correlation_id"]) if row["correlation_id"] else None,
            description=row["description"],
            details=json.loads(row["details_json"]) if row["details_json"] else {},
            error_code=row["error_code"] or None,
            error_message=row["error_message"] or None,
        )

    async def append_event(self, event: AuditEvent) -> bool:
        try:
            with self._db.connect() as conn:
                conn.execute(
                    f"INSERT INTO audit_events ({', '.join(AUDIT_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in AUDIT_COLUMNS)})",
                    event.to_record(),
                )
            return True
        except sqlite3.Error as e:
            # Audit logging must not break the sync round
            logger.warning("audit_write_failed", error=str(e), event_id=str(event.event_id))
            return False

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        try:
            with self._db.connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM audit_events WHERE correlation_id = ? ORDER BY timestamp",
                    [str(correlation_id)],
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to get audit events: {e}") from e
        return [self._row_to_event(row) for row in rows]

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        try:
            with self._db.connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM audit_events ORDER BY timestamp DESC LIMIT ?",
                    [limit],
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to get audit events: {e}") from e
        return [self._row_to_event(row) for row in rows]
