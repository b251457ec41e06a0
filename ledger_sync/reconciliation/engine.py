"""
Reconciliation Engine

Merges one client's diff into the canonical state. Runs only while the
merging client holds the ledger lease, so merges of a ledger are
serialized and each one sees the result of the previous.

MERGE STEPS (per entity kind, parents first):
1. Tombstones: removed identifiers join the removed set. Deletes win
   over any concurrent update and are never undone.
2. Identifier assignment: every created item gets the next durable
   identifier of its kind. References to items created in the same diff
   are rewritten through the new mapping.
3. Updates: last writer wins, in processing order. Updates to tombstoned
   items are dropped (deleted_remotely); updates to identifiers that were
   never handed out are dropped (unknown_identifier).
4. Reference check: a Transaction or Plan whose parent is not active is
   tombstoned too and reported as dangling_reference.
5. Output: account balances are recomputed and what was merged is
   recorded in the canonical state, per client instance.

CRITICAL: The canonical state remembers the last round merged from each
client instance (MergedRound) until the instance's next diff carries a
newer base revision. A diff with the same base revision is a replay (the
client crashed after its push was accepted but before it committed
locally): its local identifiers get the durable ones already assigned,
and items whose content was already merged are not written again, so a
write another client made in between stands. Merging the same diff
twice therefore yields the same state and mappings as merging it once.
Tombstones need no such care; a removed item stays removed.

The engine is pure and deterministic: it works on a copy, iterates in
sorted order and never reads the clock.
"""

from collections.abc import Callable
from typing import Optional

from ledger_sync.models.ledger import (
    MERGE_ORDER,
    EntityKind,
    EntitySet,
    LedgerEntity,
    LedgerState,
    find_dangling,
    is_local,
    rewrite_references,
)
from ledger_sync.models.sync import (
    CanonicalState,
    Diff,
    IdRemap,
    LocalChanges,
    MergedRound,
    MergeResult,
    RejectedItem,
    RejectionReason,
)
from ledger_sync.reconciliation.apply import refresh_balances, remap_ledger


Resolver = Callable[[EntityKind, int], Optional[int]]


class Reconciler:
    """Merges diffs into canonical state and projects the result back."""

    def merge(self, canonical_state: CanonicalState, incoming_diff: Diff) -> MergeResult:
        """
        Merge a diff into the canonical state.

        Args:
            canonical_state: Current canonical state (not modified)
            incoming_diff: Diff of the client holding the lease

        Returns:
            MergeResult with the new state, the identifiers assigned to the
            client's local items and everything that was refused or cascaded
        """
        state = canonical_state.clone()
        origin = incoming_diff.origin
        pending = state.pending_round(origin, incoming_diff.base_revision)
        # Replay bookkeeping alone is not worth a push
        before = state.model_dump(exclude={"acknowledged"})

        merged_round = (
            pending.model_copy(deep=True) if pending is not None
            else MergedRound(base_revision=incoming_diff.base_revision)
        )
        acknowledged = merged_round.id_remap
        id_remap = IdRemap()
        rejected: list[RejectedItem] = []

        def resolve(kind: EntityKind, item_id: int) -> Optional[int]:
            if not is_local(item_id):
                return item_id
            return id_remap.lookup(kind, item_id) or acknowledged.lookup(kind, item_id)

        for kind in MERGE_ORDER:
            kind_diff = incoming_diff.of(kind)
            self._apply_tombstones(state, kind, kind_diff.removed, resolve, rejected)
            self._assign_identifiers(
                state, kind, kind_diff.created, merged_round, id_remap, resolve, rejected
            )
            self._apply_updates(state, kind, kind_diff.updated, merged_round, resolve, rejected)

        self._cascade_dangling(state.ledger, id_remap, rejected)
        refresh_balances(state.ledger)

        merged_round.id_remap = acknowledged.merged_with(id_remap)
        if not merged_round.is_empty:
            state.acknowledged[origin] = merged_round

        return MergeResult(
            state=state,
            id_remap=id_remap,
            rejected=rejected,
            changed=state.model_dump(exclude={"acknowledged"}) != before,
        )

    def project(
        self,
        local_state: LedgerState,
        merged_state: LedgerState,
        id_remap: IdRemap,
    ) -> LocalChanges:
        """
        Compute what a client must apply to reach the merged state.

        Args:
            local_state: Client ledger as it was when the diff was computed
            merged_state: Canonical ledger after the merge
            id_remap: Mappings returned by the merge

        Returns:
            Upserts (durable identifiers, references already rewritten)
            and tombstones, per kind
        """
        remapped = remap_ledger(local_state, id_remap)
        changes = LocalChanges()

        for kind in MERGE_ORDER:
            local_set = remapped.of(kind)
            target = merged_state.of(kind)
            out = changes.of(kind)

            for item in target.sorted_active():
                if local_set.get(item.id) != item:
                    out.upserts.append(item)

            for item_id in sorted(target.removed):
                if item_id not in local_set.removed:
                    out.tombstones.append(item_id)

        return changes

    # =========================================================================
    # MERGE STEPS
    # =========================================================================

    def _apply_tombstones(
        self,
        state: CanonicalState,
        kind: EntityKind,
        removed: list[int],
        resolve: Resolver,
        rejected: list[RejectedItem],
    ) -> None:
        target = state.ledger.of(kind)
        for item_id in sorted(removed):
            durable_id = resolve(kind, item_id)
            if durable_id is None:
                # Created and removed between two syncs: the remote never saw it
                continue
            if not state.was_assigned(kind, durable_id):
                rejected.append(RejectedItem(
                    kind=kind,
                    item_id=durable_id,
                    reason=RejectionReason.UNKNOWN_IDENTIFIER,
                    detail=f"Cannot remove {kind.value} {durable_id}: never assigned",
                ))
                continue
            target.tombstone(durable_id)

    def _assign_identifiers(
        self,
        state: CanonicalState,
        kind: EntityKind,
        created: list[LedgerEntity],
        merged_round: MergedRound,
        id_remap: IdRemap,
        resolve: Resolver,
        rejected: list[RejectedItem],
    ) -> None:
        target = state.ledger.of(kind)
        # -1 first, in the order the client created them
        for item in sorted(created, key=lambda created_item: -created_item.id):
            if not is_local(item.id):
                self._apply_updates(state, kind, [item], merged_round, resolve, rejected)
                continue

            durable_id = merged_round.id_remap.lookup(kind, item.id)
            if durable_id is None:
                durable_id = state.allocate_id(kind)
            id_remap.record(kind, item.id, durable_id)

            if durable_id in target.removed:
                rejected.append(RejectedItem(
                    kind=kind,
                    item_id=durable_id,
                    reason=RejectionReason.DELETED_REMOTELY,
                    detail=f"{kind.value.capitalize()} {durable_id} was removed by another client",
                    local_id=item.id,
                ))
                continue

            self._write(target, kind, rewrite_references(item, resolve).with_id(durable_id), merged_round)

    def _apply_updates(
        self,
        state: CanonicalState,
        kind: EntityKind,
        updated: list[LedgerEntity],
        merged_round: MergedRound,
        resolve: Resolver,
        rejected: list[RejectedItem],
    ) -> None:
        target = state.ledger.of(kind)
        for item in sorted(updated, key=lambda updated_item: updated_item.id):
            durable_id = resolve(kind, item.id)

            if durable_id is not None and durable_id in target.removed:
                rejected.append(RejectedItem(
                    kind=kind,
                    item_id=durable_id,
                    reason=RejectionReason.DELETED_REMOTELY,
                    detail=f"Update to removed {kind.value} {durable_id} dropped",
                ))
                continue

            if durable_id is None or durable_id not in target.active:
                rejected.append(RejectedItem(
                    kind=kind,
                    item_id=item.id if durable_id is None else durable_id,
                    reason=RejectionReason.UNKNOWN_IDENTIFIER,
                    detail=f"Update to unknown {kind.value} {item.id} dropped",
                ))
                continue

            self._write(target, kind, rewrite_references(item, resolve).with_id(durable_id), merged_round)

    def _write(
        self,
        target: EntitySet,
        kind: EntityKind,
        item: LedgerEntity,
        merged_round: MergedRound,
    ) -> None:
        """Put item unless this very change was already merged from the same round."""
        digest = item.digest()
        if merged_round.digest_of(kind, item.id) == digest:
            # Replayed: a later write by another client must stand
            return
        target.put(item)
        merged_round.record(kind, item.id, digest)

    def _cascade_dangling(
        self,
        ledger: LedgerState,
        id_remap: IdRemap,
        rejected: list[RejectedItem],
    ) -> None:
        local_ids = {
            (kind, durable_id): local_id
            for kind, table in id_remap.mappings.items()
            for local_id, durable_id in table.items()
        }

        # Transactions and Plans are leaves: one pass is enough
        for kind, item, field_name in find_dangling(ledger):
            ledger.of(kind).tombstone(item.id)
            rejected.append(RejectedItem(
                kind=kind,
                item_id=item.id,
                reason=RejectionReason.DANGLING_REFERENCE,
                detail=f"{field_name}={getattr(item, field_name)} does not reference an active item",
                local_id=local_ids.get((kind, item.id)),
            ))
