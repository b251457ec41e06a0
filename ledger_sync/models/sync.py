"""
Sync Models

The data that flows through a sync round:

- Diff: what one client changed since its last sync point
- IdRemap: local -> durable identifier assignments
- CanonicalState: the remote's authoritative merged ledger
- MergedRound: what the remote last merged from one client instance
- MergeResult / RejectedItem: what the merge produced and refused
- LocalChanges: what a client must apply to converge
- SyncMarker / SyncReport: bookkeeping around a round

DESIGN DECISION: Per-kind containers are generic models with one
attribute per entity kind (accounts, categories, transactions, plans).
Each is addressed by EntityKind through of(), so the engines can loop
over MERGE_ORDER without knowing the concrete entity types.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Generic, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ledger_sync.models.ledger import (
    KIND_FIELDS,
    MERGE_ORDER,
    Account,
    Category,
    EntityKind,
    EntityT,
    IdentityKind,
    LedgerState,
    Plan,
    Transaction,
    classify,
)


# =============================================================================
# DIFF
# =============================================================================

class KindDiff(BaseModel, Generic[EntityT]):
    """Changes to one entity kind since the last sync point."""

    created: list[EntityT] = Field(
        default_factory=list,
        description="Items carrying local identifiers, never seen by the remote"
    )
    updated: list[EntityT] = Field(
        default_factory=list,
        description="Durable items whose synced fields changed"
    )
    removed: list[int] = Field(
        default_factory=list,
        description="Identifiers newly tombstoned (sorted)"
    )

    @property
    def size(self) -> int:
        return len(self.created) + len(self.updated) + len(self.removed)


class Diff(BaseModel):
    """
    The set of created/updated/removed items one client produced
    since its last sync marker.
    """

    client_id: str = Field(
        ...,
        min_length=1,
        description="Client that produced this diff"
    )
    instance_id: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Local store that produced this diff (see get_instance_id)"
    )
    base_revision: Optional[int] = Field(
        default=None,
        description="Canonical revision the client last synced at (None = never)"
    )
    accounts: KindDiff[Account] = Field(default_factory=KindDiff[Account])
    categories: KindDiff[Category] = Field(default_factory=KindDiff[Category])
    transactions: KindDiff[Transaction] = Field(default_factory=KindDiff[Transaction])
    plans: KindDiff[Plan] = Field(default_factory=KindDiff[Plan])

    def of(self, kind: EntityKind) -> KindDiff:
        return getattr(self, KIND_FIELDS[kind])

    @property
    def origin(self) -> str:
        """Key the canonical state files this diff's bookkeeping under."""
        return self.instance_id or self.client_id

    @property
    def size(self) -> int:
        return sum(self.of(kind).size for kind in MERGE_ORDER)

    @property
    def is_empty(self) -> bool:
        return self.size == 0


# =============================================================================
# IDENTIFIER REMAP
# =============================================================================

class IdRemap(BaseModel):
    """
    Local -> durable identifier table, per entity kind.

    Applied to local storage as a single table update; never by walking
    and mutating references in place.
    """

    mappings: dict[EntityKind, dict[int, int]] = Field(
        default_factory=dict,
        description="{kind: {local_id: durable_id}}"
    )

    def record(self, kind: EntityKind, local_id: int, durable_id: int) -> None:
        if classify(local_id) is not IdentityKind.LOCAL:
            raise ValueError(f"{local_id} is not a local identifier")
        if classify(durable_id) is not IdentityKind.DURABLE:
            raise ValueError(f"{durable_id} is not a durable identifier")
        self.mappings.setdefault(kind, {})[local_id] = durable_id

    def lookup(self, kind: EntityKind, local_id: int) -> Optional[int]:
        return self.mappings.get(kind, {}).get(local_id)

    def resolve(self, kind: EntityKind, item_id: int) -> Optional[int]:
        """
        Durable identifier for item_id.

        Durable identifiers resolve to themselves; unmapped local ones to None.
        """
        if item_id > 0:
            return item_id
        return self.lookup(kind, item_id)

    def merged_with(self, other: "IdRemap") -> "IdRemap":
        result = self.model_copy(deep=True)
        for kind, table in other.mappings.items():
            result.mappings.setdefault(kind, {}).update(table)
        return result

    @property
    def is_empty(self) -> bool:
        return not any(self.mappings.values())

    def __len__(self) -> int:
        return sum(len(table) for table in self.mappings.values())


# =============================================================================
# CANONICAL STATE
# =============================================================================

def _initial_counters() -> dict[EntityKind, int]:
    counters = {kind: 0 for kind in MERGE_ORDER}
    # Ids 1 and 2 belong to the predefined transfer categories
    counters[EntityKind.CATEGORY] = 2
    return counters


class MergedRound(BaseModel):
    """
    What the canonical state last merged from one client instance.

    Kept until the instance shows, through the base revision of its next
    diff, that it committed that round. A diff arriving with the same
    base revision is a replay of this round plus any newer local edits.
    """

    base_revision: Optional[int] = Field(
        default=None,
        description="Base revision of the merged diff"
    )
    id_remap: IdRemap = Field(
        default_factory=IdRemap,
        description="Identifiers assigned to the instance's local items"
    )
    applied: dict[EntityKind, dict[int, str]] = Field(
        default_factory=dict,
        description="{kind: {durable_id: digest}} of every item written from the diff"
    )

    def digest_of(self, kind: EntityKind, durable_id: int) -> Optional[str]:
        return self.applied.get(kind, {}).get(durable_id)

    def record(self, kind: EntityKind, durable_id: int, digest: str) -> None:
        self.applied.setdefault(kind, {})[durable_id] = digest

    @property
    def is_empty(self) -> bool:
        return self.id_remap.is_empty and not any(self.applied.values())


class CanonicalState(BaseModel):
    """
    The remote's authoritative merged state of a ledger.

    Besides the ledger itself it carries the monotonic identifier
    counters and, per client instance, the round it last merged. The
    latter makes re-merging an already applied diff a no-op (a crash
    between push and commit is recovered by simply running the round
    again).
    """

    ledger: LedgerState = Field(
        default_factory=LedgerState.bootstrap,
        description="Merged ledger"
    )
    counters: dict[EntityKind, int] = Field(
        default_factory=_initial_counters,
        description="Last durable identifier handed out per kind"
    )
    acknowledged: dict[str, MergedRound] = Field(
        default_factory=dict,
        description="Last merged round, per originating client instance"
    )

    def allocate_id(self, kind: EntityKind) -> int:
        """Hand out the next durable identifier for a kind."""
        self.counters[kind] = self.counters.get(kind, 0) + 1
        return self.counters[kind]

    def was_assigned(self, kind: EntityKind, item_id: int) -> bool:
        """Has this durable identifier ever been handed out?"""
        return 0 < item_id <= self.counters.get(kind, 0)

    def pending_round(self, origin: str, base_revision: Optional[int]) -> Optional[MergedRound]:
        """
        The round merged from origin that it has not committed yet.

        An entry with another base revision was committed by the instance
        (its marker moved on) and is pruned.
        """
        entry = self.acknowledged.get(origin)
        if entry is not None and entry.base_revision != base_revision:
            del self.acknowledged[origin]
            return None
        return entry

    def clone(self) -> "CanonicalState":
        return self.model_copy(deep=True)


# =============================================================================
# MERGE OUTPUT
# =============================================================================

class RejectionReason(str, Enum):
    """Why the merge refused or cascaded an item. Never fatal."""
    DANGLING_REFERENCE = "dangling_reference"
    DELETED_REMOTELY = "deleted_remotely"
    UNKNOWN_IDENTIFIER = "unknown_identifier"


class RejectedItem(BaseModel):
    """An item the merge cascaded to removed or refused to apply."""

    kind: EntityKind
    item_id: int = Field(
        ...,
        description="Identifier of the item (durable once assigned)"
    )
    reason: RejectionReason
    detail: str = Field(
        default="",
        description="Human-readable explanation"
    )
    local_id: Optional[int] = Field(
        default=None,
        description="Client-side identifier, if the item was created in this diff"
    )


class MergeResult(BaseModel):
    """Output of merging one diff into the canonical state."""

    state: CanonicalState
    id_remap: IdRemap = Field(default_factory=IdRemap)
    rejected: list[RejectedItem] = Field(default_factory=list)
    changed: bool = Field(
        default=True,
        description="Do the ledger or the id counters differ from the merged-into state?"
    )

    @property
    def dangling(self) -> list[RejectedItem]:
        return [
            item for item in self.rejected
            if item.reason is RejectionReason.DANGLING_REFERENCE
        ]


class KindChanges(BaseModel, Generic[EntityT]):
    """Changes to apply locally for one entity kind."""

    upserts: list[EntityT] = Field(default_factory=list)
    tombstones: list[int] = Field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.upserts) + len(self.tombstones)


class LocalChanges(BaseModel):
    """
    What a client must apply (after its id remap) to match the
    canonical state.
    """

    accounts: KindChanges[Account] = Field(default_factory=KindChanges[Account])
    categories: KindChanges[Category] = Field(default_factory=KindChanges[Category])
    transactions: KindChanges[Transaction] = Field(default_factory=KindChanges[Transaction])
    plans: KindChanges[Plan] = Field(default_factory=KindChanges[Plan])

    def of(self, kind: EntityKind) -> KindChanges:
        return getattr(self, KIND_FIELDS[kind])

    @property
    def size(self) -> int:
        return sum(self.of(kind).size for kind in MERGE_ORDER)


# =============================================================================
# ROUND BOOKKEEPING
# =============================================================================

class SyncMarker(BaseModel):
    """A client's last successful sync point."""

    revision: int = Field(
        ...,
        ge=0,
        description="Canonical revision the client converged to"
    )
    synced_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the round committed (UTC)"
    )


class SyncPhase(str, Enum):
    """Phases of the sync protocol state machine."""
    IDLE = "idle"
    PULLING = "pulling"
    MERGING = "merging"
    PUSHING = "pushing"
    COMMITTING = "committing"
    ABORTED = "aborted"


class SyncReport(BaseModel):
    """Outcome of a committed sync round, returned to the caller."""

    round_id: UUID = Field(default_factory=uuid4)
    client_id: str
    instance_id: Optional[str] = Field(
        default=None,
        description="Local store the round ran for"
    )
    ledger_id: str
    started_at: datetime
    finished_at: datetime
    revision: int = Field(
        ...,
        ge=0,
        description="Canonical revision the client now sits at"
    )
    pushed: bool = Field(
        ...,
        description="Was a new canonical state uploaded?"
    )
    diff_size: int = Field(ge=0)
    applied_changes: int = Field(ge=0)
    id_remap: IdRemap = Field(default_factory=IdRemap)
    rejected: list[RejectedItem] = Field(default_factory=list)
