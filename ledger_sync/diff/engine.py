"""
Diff Engine

Computes the changes a client made to its local state since its last
successful sync.

DESIGN DECISION: The diff is a set difference against the snapshot the
client stored when it last committed a sync round, NOT a comparison of
timestamps. This is the only reliable way to tell "created since last
sync" from "existed before and unchanged" when clocks cannot be trusted.

CLASSIFICATION (per entity kind):
- created: active items still carrying a local identifier
- updated: durable items whose synced fields differ from the snapshot,
  or that the snapshot does not know at all
- removed: identifiers tombstoned since the snapshot, plus snapshot items
  that vanished from local state entirely

A client that never synced diffs against an empty ledger, so its diff
is its entire active + removed state.

The engine is pure: it never touches storage.
"""

from typing import Optional

from ledger_sync.models.ledger import (
    MERGE_ORDER,
    EntitySet,
    LedgerState,
    is_local,
)
from ledger_sync.models.sync import Diff, KindDiff, SyncMarker


class DiffEngine:
    """Produces the outgoing diff of a sync round."""

    def compute_diff(
        self,
        local_state_now: LedgerState,
        last_sync_marker: Optional[SyncMarker],
        snapshot: Optional[LedgerState],
        client_id: str,
        instance_id: Optional[str] = None,
    ) -> Diff:
        """
        Compute what changed locally since last_sync_marker.

        Args:
            local_state_now: Current local ledger
            last_sync_marker: Marker of the previous successful sync,
                None if the client never synced
            snapshot: Ledger stored at the previous sync point
            client_id: Identifier of this client
            instance_id: Identifier of the local store the state comes from

        Returns:
            A Diff with deterministically ordered contents
        """
        never_synced = last_sync_marker is None or snapshot is None
        base = LedgerState() if never_synced else snapshot

        diff = Diff(
            client_id=client_id,
            instance_id=instance_id,
            base_revision=None if last_sync_marker is None else last_sync_marker.revision,
        )
        for kind in MERGE_ORDER:
            self._diff_kind(local_state_now.of(kind), base.of(kind), diff.of(kind))

        return diff

    def _diff_kind(
        self,
        current: EntitySet,
        base: EntitySet,
        out: KindDiff,
    ) -> None:
        for item in current.sorted_active():
            if is_local(item.id):
                out.created.append(item)
                continue

            previous = base.get(item.id)
            if previous is None or previous.synced_fields() != item.synced_fields():
                out.updated.append(item)

        # Local ids were handed out in decreasing order: -1 first
        out.created.sort(key=lambda item: -item.id)

        newly_removed = current.removed - base.removed
        vanished = base.active.keys() - current.active.keys() - current.removed
        out.removed = sorted(newly_removed | vanished)


def diff_counts(diff: Diff) -> dict[str, dict[str, int]]:
    """Per-kind created/updated/removed counts, for logging."""
    return {
        kind.value: {
            "created": len(diff.of(kind).created),
            "updated": len(diff.of(kind).updated),
            "removed": len(diff.of(kind).removed),
        }
        for kind in MERGE_ORDER
    }
