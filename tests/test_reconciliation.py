"""
Tests for the reconciliation engine.

Covers the merge properties every round relies on:
1. Idempotence: merging the same diff twice equals merging it once
2. Tombstone monotonicity: nothing removed ever becomes active again
3. No dangling references after a merge
4. Durable identifiers are never handed out twice
"""

from datetime import datetime, timezone

import pytest

from ledger_sync.models import (
    Account,
    CanonicalState,
    Category,
    CategoryType,
    Diff,
    EntityKind,
    IdRemap,
    LedgerState,
    LocalChanges,
    Plan,
    RejectionReason,
    Transaction,
    find_dangling,
)
from ledger_sync.reconciliation import Reconciler, apply_local_changes, remap_ledger


TS = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def reconciler():
    return Reconciler()


def canonical_with_food() -> CanonicalState:
    """Canonical state with account 1, category 3 and transaction 1."""
    state = CanonicalState()
    state.ledger.accounts.put(Account(id=state.allocate_id(EntityKind.ACCOUNT), name="Checking", opening_balance=100))
    state.ledger.categories.put(Category(
        id=state.allocate_id(EntityKind.CATEGORY), name="Food", category_type=CategoryType.EXPENSE,
    ))
    state.ledger.transactions.put(Transaction(
        id=state.allocate_id(EntityKind.TRANSACTION), account_id=1, category_id=3, amount=-20, timestamp=TS,
    ))
    return state


class TestIdentifierAssignment:
    """Tests for local -> durable identifier assignment."""

    def test_created_account_gets_first_durable_id(self, reconciler):
        diff = Diff(client_id="client-a")
        diff.accounts.created.append(Account(id=-1, name="Checking"))

        result = reconciler.merge(CanonicalState(), diff)

        assert result.id_remap.lookup(EntityKind.ACCOUNT, -1) == 1
        assert result.state.ledger.accounts.get(1).name == "Checking"
        assert result.rejected == []

    def test_references_inside_the_diff_are_rewritten(self, reconciler):
        diff = Diff(client_id="client-a")
        diff.accounts.created.append(Account(id=-1, name="Checking"))
        diff.categories.created.append(Category(id=-2, name="Food", category_type=CategoryType.EXPENSE))
        diff.transactions.created.append(Transaction(id=-3, account_id=-1, category_id=-2, amount=-5, timestamp=TS))
        diff.plans.created.append(Plan(id=-4, category_id=-2, monthly_limit=100, name="Food"))

        result = reconciler.merge(CanonicalState(), diff)

        transaction = result.state.ledger.transactions.get(1)
        assert transaction.account_id == 1
        assert transaction.category_id == 3
        assert result.state.ledger.plans.get(1).category_id == 3

    def test_ids_never_reused_after_tombstone(self, reconciler):
        canonical = canonical_with_food()
        canonical.ledger.transactions.tombstone(1)

        diff = Diff(client_id="client-a")
        diff.transactions.created.append(Transaction(id=-1, account_id=1, category_id=3, amount=-1, timestamp=TS))
        result = reconciler.merge(canonical, diff)

        assert result.id_remap.lookup(EntityKind.TRANSACTION, -1) == 2
        assert 1 in result.state.ledger.transactions.removed

    def test_two_clients_get_distinct_ids(self, reconciler):
        diff_a = Diff(client_id="client-a")
        diff_a.accounts.created.append(Account(id=-1, name="Checking"))
        diff_b = Diff(client_id="client-b")
        diff_b.accounts.created.append(Account(id=-1, name="Savings"))

        after_a = reconciler.merge(CanonicalState(), diff_a)
        after_b = reconciler.merge(after_a.state, diff_b)

        assert after_a.id_remap.lookup(EntityKind.ACCOUNT, -1) == 1
        assert after_b.id_remap.lookup(EntityKind.ACCOUNT, -1) == 2
        assert {a.name for a in after_b.state.ledger.accounts.active.values()} == {"Checking", "Savings"}

    def test_input_state_is_not_modified(self, reconciler):
        canonical = CanonicalState()
        before = canonical.model_dump()
        diff = Diff(client_id="client-a")
        diff.accounts.created.append(Account(id=-1, name="Checking"))

        reconciler.merge(canonical, diff)

        assert canonical.model_dump() == before


class TestIdempotence:
    """Re-merging an already applied diff changes nothing."""

    def test_merge_twice_equals_merge_once(self, reconciler):
        diff = Diff(client_id="client-a")
        diff.accounts.created.append(Account(id=-1, name="Checking", opening_balance=50))
        diff.transactions.created.append(Transaction(id=-2, account_id=-1, category_id=1, amount=10, timestamp=TS))

        once = reconciler.merge(CanonicalState(), diff)
        twice = reconciler.merge(once.state, diff)

        assert twice.state.model_dump() == once.state.model_dump()
        assert twice.id_remap.model_dump() == once.id_remap.model_dump()

    def test_updates_and_removals_are_idempotent(self, reconciler):
        canonical = canonical_with_food()
        diff = Diff(client_id="client-a", base_revision=1)
        diff.accounts.updated.append(Account(id=1, name="Main", opening_balance=100))
        diff.transactions.removed.append(1)

        once = reconciler.merge(canonical, diff)
        twice = reconciler.merge(once.state, diff)

        assert twice.state.model_dump() == once.state.model_dump()

    def test_instances_sharing_a_client_name_get_their_own_ids(self, reconciler):
        first = Diff(client_id="client-a", instance_id="instance-1")
        first.accounts.created.append(Account(id=-1, name="Checking"))
        second = Diff(client_id="client-a", instance_id="instance-2")
        second.accounts.created.append(Account(id=-1, name="Savings"))

        state = reconciler.merge(CanonicalState(), first).state
        result = reconciler.merge(state, second)

        assert result.id_remap.lookup(EntityKind.ACCOUNT, -1) == 2
        accounts = result.state.ledger.accounts
        assert (accounts.get(1).name, accounts.get(2).name) == ("Checking", "Savings")

    def test_committed_round_is_forgotten(self, reconciler):
        created = Diff(client_id="client-a", instance_id="instance-1")
        created.accounts.created.append(Account(id=-1, name="Checking"))
        state = reconciler.merge(CanonicalState(), created).state
        assert state.acknowledged["instance-1"].id_remap.lookup(EntityKind.ACCOUNT, -1) == 1

        result = reconciler.merge(state, Diff(client_id="client-a", instance_id="instance-1", base_revision=1))

        assert "instance-1" not in result.state.acknowledged
        assert result.changed is False

    def test_replayed_update_keeps_later_write(self, reconciler):
        from_a = Diff(client_id="client-a", instance_id="instance-a", base_revision=1)
        from_a.accounts.updated.append(Account(id=1, name="FromA", opening_balance=100))
        from_b = Diff(client_id="client-b", instance_id="instance-b", base_revision=1)
        from_b.accounts.updated.append(Account(id=1, name="FromB", opening_balance=100))

        state = reconciler.merge(canonical_with_food(), from_a).state
        state = reconciler.merge(state, from_b).state
        replayed = reconciler.merge(state, from_a)

        assert replayed.state.ledger.accounts.get(1).name == "FromB"
        assert replayed.changed is False

    def test_replay_carrying_newer_edit_applies_it(self, reconciler):
        from_a = Diff(client_id="client-a", instance_id="instance-a", base_revision=1)
        from_a.accounts.updated.append(Account(id=1, name="FromA", opening_balance=100))
        from_b = Diff(client_id="client-b", instance_id="instance-b", base_revision=1)
        from_b.accounts.updated.append(Account(id=1, name="FromB", opening_balance=100))
        edited = Diff(client_id="client-a", instance_id="instance-a", base_revision=1)
        edited.accounts.updated.append(Account(id=1, name="FromA again", opening_balance=100))

        state = reconciler.merge(canonical_with_food(), from_a).state
        state = reconciler.merge(state, from_b).state
        result = reconciler.merge(state, edited)

        assert result.state.ledger.accounts.get(1).name == "FromA again"
        assert result.changed is True


class TestTombstones:
    """Deletes win and are never undone."""

    def test_update_to_removed_item_is_dropped(self, reconciler):
        canonical = canonical_with_food()
        canonical.ledger.transactions.tombstone(1)

        diff = Diff(client_id="client-b")
        diff.transactions.updated.append(Transaction(id=1, account_id=1, category_id=3, amount=-99, timestamp=TS))
        result = reconciler.merge(canonical, diff)

        assert 1 not in result.state.ledger.transactions
        assert [r.reason for r in result.rejected] == [RejectionReason.DELETED_REMOTELY]

    def test_delete_wins_over_update_in_same_diff(self, reconciler):
        diff = Diff(client_id="client-a")
        diff.transactions.updated.append(Transaction(id=1, account_id=1, category_id=3, amount=-99, timestamp=TS))
        diff.transactions.removed.append(1)

        result = reconciler.merge(canonical_with_food(), diff)

        assert 1 in result.state.ledger.transactions.removed
        assert 1 not in result.state.ledger.transactions

    def test_removed_stays_removed_across_merges(self, reconciler):
        state = canonical_with_food()
        removal = Diff(client_id="client-a")
        removal.accounts.removed.append(1)
        removal.transactions.removed.append(1)
        state = reconciler.merge(state, removal).state

        for client in ("client-b", "client-c"):
            diff = Diff(client_id=client)
            diff.accounts.updated.append(Account(id=1, name="Resurrected"))
            state = reconciler.merge(state, diff).state
            assert 1 in state.ledger.accounts.removed
            assert 1 not in state.ledger.accounts

    def test_removing_unknown_id_is_rejected(self, reconciler):
        diff = Diff(client_id="client-a")
        diff.accounts.removed.append(42)

        result = reconciler.merge(CanonicalState(), diff)

        assert 42 not in result.state.ledger.accounts.removed
        assert result.rejected[0].reason is RejectionReason.UNKNOWN_IDENTIFIER

    def test_update_to_unknown_id_is_rejected(self, reconciler):
        diff = Diff(client_id="client-a")
        diff.accounts.updated.append(Account(id=7, name="Ghost"))

        result = reconciler.merge(CanonicalState(), diff)

        assert 7 not in result.state.ledger.accounts
        assert result.rejected[0].reason is RejectionReason.UNKNOWN_IDENTIFIER

    def test_local_only_removal_is_skipped(self, reconciler):
        diff = Diff(client_id="client-a")
        diff.accounts.removed.append(-3)

        result = reconciler.merge(CanonicalState(), diff)

        assert result.rejected == []
        assert result.state.ledger.accounts.removed == set()


class TestReferences:
    """No active item references a removed one after a merge."""

    def test_transaction_to_removed_category_cascades(self, reconciler):
        canonical = canonical_with_food()
        canonical.ledger.transactions.tombstone(1)
        canonical.ledger.categories.tombstone(3)

        diff = Diff(client_id="client-b")
        diff.transactions.created.append(Transaction(id=-1, account_id=1, category_id=3, amount=-7, timestamp=TS))
        result = reconciler.merge(canonical, diff)

        durable_id = result.id_remap.lookup(EntityKind.TRANSACTION, -1)
        assert durable_id in result.state.ledger.transactions.removed
        assert len(result.dangling) == 1
        assert result.dangling[0].local_id == -1
        assert result.dangling[0].item_id == durable_id
        assert find_dangling(result.state.ledger) == []

    def test_unresolvable_local_reference_cascades(self, reconciler):
        diff = Diff(client_id="client-a")
        diff.plans.created.append(Plan(id=-1, category_id=-9, monthly_limit=5, name="Orphan"))

        result = reconciler.merge(CanonicalState(), diff)

        assert result.dangling[0].kind is EntityKind.PLAN
        assert find_dangling(result.state.ledger) == []

    def test_balances_are_recomputed(self, reconciler):
        diff = Diff(client_id="client-a")
        diff.transactions.created.append(Transaction(id=-1, account_id=1, category_id=3, amount=-30, timestamp=TS))

        result = reconciler.merge(canonical_with_food(), diff)

        assert result.state.ledger.accounts.get(1).current_balance == 100 - 20 - 30


class TestLastWriterWins:
    """Concurrent updates: the later merge decides."""

    def test_second_update_wins(self, reconciler):
        canonical = canonical_with_food()
        canonical.ledger.transactions.put(Transaction(id=5, account_id=1, category_id=3, amount=-10, timestamp=TS))
        canonical.counters[EntityKind.TRANSACTION] = 5

        diff_a = Diff(client_id="client-a")
        diff_a.transactions.updated.append(Transaction(id=5, account_id=1, category_id=3, amount=-11, timestamp=TS))
        diff_b = Diff(client_id="client-b")
        diff_b.transactions.updated.append(Transaction(id=5, account_id=1, category_id=3, amount=-12, timestamp=TS))

        state = reconciler.merge(canonical, diff_a).state
        state = reconciler.merge(state, diff_b).state

        assert state.ledger.transactions.get(5).amount == -12


class TestProjection:
    """Tests for projecting the merged state back to a client."""

    def test_project_and_apply_converge(self, reconciler):
        local = LedgerState.bootstrap()
        local.accounts.put(Account(id=-1, name="Checking", opening_balance=10, current_balance=10))
        local.transactions.put(Transaction(id=-2, account_id=-1, category_id=1, amount=5, timestamp=TS))

        diff = Diff(client_id="client-a")
        diff.accounts.created.append(local.accounts.get(-1))
        diff.transactions.created.append(local.transactions.get(-2))
        merge = reconciler.merge(CanonicalState(), diff)

        changes = reconciler.project(local, merge.state.ledger, merge.id_remap)
        converged = apply_local_changes(local, changes, merge.id_remap, baseline=local)

        assert converged.model_dump() == merge.state.ledger.model_dump()
        assert converged.transactions.get(1).account_id == 1

    def test_project_tombstones_items_removed_elsewhere(self, reconciler):
        canonical = canonical_with_food()
        local = canonical.ledger.clone()
        canonical.ledger.transactions.tombstone(1)

        changes = reconciler.project(local, canonical.ledger, IdRemap())

        assert changes.transactions.tombstones == [1]

    def test_mid_round_edit_is_deferred(self):
        baseline = LedgerState.bootstrap()
        baseline.accounts.put(Account(id=1, name="Checking"))
        edited = baseline.clone()
        edited.accounts.put(Account(id=1, name="Edited meanwhile"))

        changes = LocalChanges()
        changes.accounts.upserts.append(Account(id=1, name="From remote"))
        result = apply_local_changes(edited, changes, IdRemap(), baseline=baseline)

        assert result.accounts.get(1).name == "Edited meanwhile"

    def test_remap_rewrites_keys_and_references(self):
        local = LedgerState.bootstrap()
        local.accounts.put(Account(id=-1, name="Checking"))
        local.transactions.put(Transaction(id=-1, account_id=-1, category_id=2, amount=-3, timestamp=TS))
        remap = IdRemap()
        remap.record(EntityKind.ACCOUNT, -1, 4)

        result = remap_ledger(local, remap)

        assert 4 in result.accounts
        assert result.transactions.get(-1).account_id == 4


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
