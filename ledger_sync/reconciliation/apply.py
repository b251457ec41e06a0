"""
Applying Merge Results to a Ledger

Pure functions shared by the reconciliation engine and every local
storage backend:

- remap_ledger: rewrite local identifiers (keys and references) to
  durable ones using an IdRemap table
- apply_local_changes: bring a local ledger to the canonical state while
  leaving alone anything the user changed after the round started
- refresh_balances: recompute the cached account balances

DESIGN DECISION: Storage backends wrap these in their own transaction
instead of re-implementing them. The in-memory backend and the SQLite
backend therefore cannot disagree on what "apply" means.
"""

from typing import Optional

from ledger_sync.models.ledger import (
    MERGE_ORDER,
    EntityKind,
    EntitySet,
    LedgerState,
    compute_balances,
    rewrite_references,
)
from ledger_sync.models.sync import IdRemap, LocalChanges


def remap_ledger(state: LedgerState, id_remap: IdRemap) -> LedgerState:
    """
    Return a copy of state with every mapped local identifier replaced.

    Unmapped local identifiers are kept as they are.
    """
    if id_remap.is_empty:
        return state.clone()

    def resolve(kind: EntityKind, item_id: int) -> Optional[int]:
        return id_remap.resolve(kind, item_id)

    result = LedgerState()
    for kind in MERGE_ORDER:
        source = state.of(kind)
        target = result.of(kind)
        for item_id in source.removed:
            target.removed.add(resolve(kind, item_id) or item_id)
        for item in source.active.values():
            new_id = resolve(kind, item.id) or item.id
            target.active[new_id] = rewrite_references(item, resolve).with_id(new_id)
    return result


def refresh_balances(state: LedgerState) -> None:
    """Recompute current_balance of every active account, in place."""
    accounts = state.accounts
    for account_id, balance in compute_balances(state).items():
        account = accounts.active[account_id]
        if account.current_balance != balance:
            accounts.active[account_id] = account.model_copy(
                update={"current_balance": balance}
            )


def _changed_since(baseline: EntitySet, current: EntitySet, item_id: int) -> bool:
    before = baseline.get(item_id)
    after = current.get(item_id)
    if before is None or after is None:
        return (before is None) != (after is None)
    return before.synced_fields() != after.synced_fields()


def apply_local_changes(
    state: LedgerState,
    changes: LocalChanges,
    id_remap: IdRemap,
    baseline: Optional[LedgerState] = None,
) -> LedgerState:
    """
    Apply a round's id remap and changes to a local ledger.

    Args:
        state: Current local ledger
        changes: Upserts and tombstones computed by the reconciler
        id_remap: Identifier assignments echoed back by the merge
        baseline: Local ledger as loaded at the start of the round. Items
            whose synced fields differ between baseline and state were
            edited mid-round and are skipped (they go out in the next diff).

    Returns:
        The new local ledger (state itself is not modified)
    """
    result = remap_ledger(state, id_remap)
    base = remap_ledger(baseline, id_remap) if baseline is not None else None

    for kind in MERGE_ORDER:
        target = result.of(kind)
        kind_changes = changes.of(kind)
        base_set = base.of(kind) if base is not None else None

        for item in kind_changes.upserts:
            if item.id in target.removed:
                continue
            if base_set is not None and _changed_since(base_set, target, item.id):
                continue
            target.put(item)

        for item_id in kind_changes.tombstones:
            target.tombstone(item_id)

    refresh_balances(result)
    return result
