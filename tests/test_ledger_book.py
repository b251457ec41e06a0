"""
Tests for local ledger operations (LedgerBook) and component wiring.
"""

from datetime import datetime, timedelta, timezone

import pytest

from ledger_sync.config import Settings
from ledger_sync.models import TRANSFER_INCOME_ID, TRANSFER_OUTCOME_ID, CategoryType
from ledger_sync.orchestrator import (
    TRANSFER_INCOME_DESCRIPTION,
    TRANSFER_OUTCOME_DESCRIPTION,
    LedgerBook,
    create_ledger_components,
)
from ledger_sync.services.remote import DirectoryRemoteStore, InMemoryRemoteStore
from ledger_sync.services.storage import (
    DuplicateError,
    InMemoryLedgerStorage,
    NotFoundError,
    ProtectedItemError,
    ReferenceInUseError,
    SQLiteLedgerStorage,
)

from conftest import PASSWORD, SALT


@pytest.fixture
def book():
    return LedgerBook(InMemoryLedgerStorage())


class TestAccounts:
    """Tests for account operations."""

    @pytest.mark.asyncio
    async def test_add_account(self, book):
        account = await book.add_account("Checking", opening_balance=1500)
        assert account.id < 0
        assert account.current_balance == 1500
        assert await book.accounts() == [account]

    @pytest.mark.asyncio
    async def test_duplicate_name(self, book):
        await book.add_account("Checking")
        with pytest.raises(DuplicateError):
            await book.add_account("  Checking ")

    @pytest.mark.asyncio
    async def test_update_opening_balance_moves_current(self, book):
        account = await book.add_account("Checking", opening_balance=100)
        await book.add_transaction(account.id, TRANSFER_INCOME_ID, 20)

        updated = await book.update_account(account.id, opening_balance=150)

        assert updated.current_balance == 170
        assert updated.name == "Checking"

    @pytest.mark.asyncio
    async def test_remove_account_in_use(self, book):
        account = await book.add_account("Checking")
        await book.add_transaction(account.id, TRANSFER_INCOME_ID, 20)

        with pytest.raises(ReferenceInUseError):
            await book.remove_account(account.id)

        await book.remove_account(account.id, force=True)
        assert await book.accounts() == []
        assert await book.transactions() == []

    @pytest.mark.asyncio
    async def test_unknown_account(self, book):
        with pytest.raises(NotFoundError):
            await book.account(-42)


class TestCategories:
    """Tests for category operations."""

    @pytest.mark.asyncio
    async def test_same_name_different_type(self, book):
        await book.add_category("Gifts", CategoryType.INCOME)
        await book.add_category("Gifts", CategoryType.EXPENSE)
        with pytest.raises(DuplicateError):
            await book.add_category("Gifts", CategoryType.EXPENSE)

    @pytest.mark.asyncio
    async def test_filter_by_type(self, book):
        await book.add_category("Salary", CategoryType.INCOME)
        income = await book.categories(CategoryType.INCOME)
        assert {c.name for c in income} == {"Transfer (income)", "Salary"}
        assert all(c.category_type is CategoryType.INCOME for c in income)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("category_id", [TRANSFER_INCOME_ID, TRANSFER_OUTCOME_ID])
    async def test_predefined_are_protected(self, book, category_id):
        with pytest.raises(ProtectedItemError):
            await book.update_category(category_id, "Mine")
        with pytest.raises(ProtectedItemError):
            await book.remove_category(category_id)

    @pytest.mark.asyncio
    async def test_remove_category_in_use(self, book):
        food = await book.add_category("Food", CategoryType.EXPENSE)
        plan = await book.add_plan(food.id, 200, "Food")

        with pytest.raises(ReferenceInUseError):
            await book.remove_category(food.id)

        await book.remove_plan(plan.id)
        await book.remove_category(food.id)
        assert food.id not in [c.id for c in await book.categories()]

    @pytest.mark.asyncio
    async def test_rename(self, book):
        food = await book.add_category("Food", CategoryType.EXPENSE)
        renamed = await book.update_category(food.id, "Groceries")
        assert (await book.category(food.id)).name == renamed.name == "Groceries"


class TestTransactions:
    """Tests for transactions, transfers and balances."""

    @pytest.mark.asyncio
    async def test_balance_follows_transactions(self, book):
        account = await book.add_account("Checking", opening_balance=100)
        food = await book.add_category("Food", CategoryType.EXPENSE)

        spent = await book.add_transaction(account.id, food.id, -30, "Lunch")
        assert (await book.account(account.id)).current_balance == 70

        await book.remove_transaction(spent.id)
        assert (await book.account(account.id)).current_balance == 100

    @pytest.mark.asyncio
    async def test_amount_beyond_64_bits_is_refused(self, book):
        account = await book.add_account("Checking")

        with pytest.raises(ValueError):
            await book.add_transaction(account.id, 1, 2 ** 63)
        assert await book.transactions() == []
        assert (await book.account(account.id)).current_balance == 0

    @pytest.mark.asyncio
    async def test_transaction_needs_active_parents(self, book):
        account = await book.add_account("Checking")
        with pytest.raises(NotFoundError):
            await book.add_transaction(account.id, -99, 10)
        with pytest.raises(NotFoundError):
            await book.add_transaction(-99, TRANSFER_INCOME_ID, 10)

    @pytest.mark.asyncio
    async def test_transfer(self, book):
        checking = await book.add_account("Checking", opening_balance=500)
        savings = await book.add_account("Savings")

        income, outcome = await book.add_transfer(-200, checking.id, savings.id)

        assert (income.amount, income.account_id, income.category_id) == (200, savings.id, TRANSFER_INCOME_ID)
        assert (outcome.amount, outcome.account_id, outcome.category_id) == (-200, checking.id, TRANSFER_OUTCOME_ID)
        assert income.description == TRANSFER_INCOME_DESCRIPTION
        assert outcome.description == TRANSFER_OUTCOME_DESCRIPTION
        assert income.timestamp == outcome.timestamp
        assert (await book.account(checking.id)).current_balance == 300
        assert (await book.account(savings.id)).current_balance == 200

    @pytest.mark.asyncio
    async def test_filters_and_order(self, book):
        account = await book.add_account("Checking")
        food = await book.add_category("Food", CategoryType.EXPENSE)
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        old = await book.add_transaction(account.id, food.id, -1, timestamp=start)
        new = await book.add_transaction(account.id, food.id, -2, timestamp=start + timedelta(days=40))
        await book.add_transaction(account.id, TRANSFER_INCOME_ID, 3, timestamp=start + timedelta(days=1))

        assert [t.id for t in await book.transactions(category_id=food.id)] == [new.id, old.id]
        january = await book.transactions(start=start, end=start + timedelta(days=31))
        assert len(january) == 2
        assert old.id in [t.id for t in january]


class TestPlans:
    """Tests for monthly plans."""

    @pytest.mark.asyncio
    async def test_update_plan(self, book):
        food = await book.add_category("Food", CategoryType.EXPENSE)
        plan = await book.add_plan(food.id, 200, "Food")

        updated = await book.update_plan(plan.id, monthly_limit=250)

        assert updated.monthly_limit == 250
        assert updated.name == "Food"
        assert await book.plans() == [updated]

    @pytest.mark.asyncio
    async def test_plan_needs_category(self, book):
        with pytest.raises(NotFoundError):
            await book.add_plan(-5, 100, "Nothing")

    @pytest.mark.asyncio
    async def test_plan_lookup(self, book):
        food = await book.add_category("Food", CategoryType.EXPENSE)
        rent = await book.add_category("Rent", CategoryType.EXPENSE)
        groceries = await book.add_plan(food.id, 200, "Groceries")
        eating_out = await book.add_plan(food.id, 80, "Eating out")
        housing = await book.add_plan(rent.id, 900, "Housing")

        assert await book.plan(housing.id) == housing
        assert await book.plans_for(food.id) == sorted([groceries, eating_out], key=lambda p: p.id)
        assert await book.plans_for(rent.id) == [housing]

        await book.remove_plan(housing.id)
        assert await book.plans_for(rent.id) == []
        with pytest.raises(NotFoundError):
            await book.plan(housing.id)

    @pytest.mark.asyncio
    async def test_plans_for_unknown_category(self, book):
        with pytest.raises(NotFoundError):
            await book.plans_for(-5)


class TestComponents:
    """Tests for create_ledger_components wiring."""

    @pytest.fixture
    def env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LEDGER_CRYPTO_SCRYPT_LOG_N", "10")
        monkeypatch.setenv("LEDGER_SYNC_CLIENT_ID", "client-a")
        monkeypatch.setenv("LEDGER_SYNC_LEDGER_ID", "household")
        monkeypatch.setenv("LEDGER_STORAGE_DATABASE_PATH", str(tmp_path / "ledger.sqlite3"))
        monkeypatch.delenv("LEDGER_STORAGE_REMOTE_DIRECTORY", raising=False)
        return monkeypatch

    @pytest.mark.asyncio
    async def test_in_memory_components(self, env, tmp_path):
        book, session = create_ledger_components(PASSWORD, SALT, settings=Settings(), use_storage=False)

        await book.add_account("Checking")
        report = await session.run()

        assert report.client_id == "client-a"
        assert isinstance(session._remote, InMemoryRemoteStore)
        assert not (tmp_path / "ledger.sqlite3").exists()

    @pytest.mark.asyncio
    async def test_sqlite_and_directory_components(self, env, tmp_path):
        share = tmp_path / "share"
        share.mkdir()
        env.setenv("LEDGER_STORAGE_REMOTE_DIRECTORY", str(share))
        book, session = create_ledger_components(PASSWORD, SALT, settings=Settings())

        await book.add_account("Checking")
        report = await session.run()

        assert isinstance(session._storage, SQLiteLedgerStorage)
        assert isinstance(session._remote, DirectoryRemoteStore)
        assert report.revision == 1
        assert (share / "household" / "HEAD").read_text() == "1"
        assert [a.id for a in await book.accounts()] == [1]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
