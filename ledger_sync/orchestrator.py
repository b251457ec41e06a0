"""
Main Orchestrator for Ledger Sync

This module ties together all the components and defines the local
ledger operations a client performs between syncs:
1. Accounts, categories, transactions and plans (add / update / remove)
2. Transfers between accounts
3. Listings for display

DESIGN DECISION: The ledger book enforces the boundaries:
- New items always get a local identifier; only a merge hands out durable ones
- Removal is a tombstone, never an erase
- No reference ever points at a removed item
- The predefined transfer categories cannot be changed or removed

Sync rounds are run by the SyncSession built next to the book in
create_ledger_components; the book itself never talks to the remote.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

import structlog

from ledger_sync.audit import AuditLogger
from ledger_sync.config import Settings, get_settings
from ledger_sync.crypto import LedgerCipher
from ledger_sync.models.ledger import (
    PREDEFINED_CATEGORY_IDS,
    TRANSFER_INCOME_ID,
    TRANSFER_OUTCOME_ID,
    Account,
    Category,
    CategoryType,
    EntityKind,
    LedgerState,
    Plan,
    Transaction,
    find_cascade,
)
from ledger_sync.services.remote import (
    DirectoryRemoteStore,
    InMemoryRemoteStore,
    RemoteTransportInterface,
)
from ledger_sync.services.storage import (
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    LocalStorageInterface,
    NotFoundError,
    ProtectedItemError,
    ReferenceInUseError,
    SQLiteAuditStorage,
    SQLiteLedgerStorage,
)
from ledger_sync.sync import SyncSession


logger = structlog.get_logger("ledger_sync.ledger")

TRANSFER_INCOME_DESCRIPTION = "--> Transfer (income)"
TRANSFER_OUTCOME_DESCRIPTION = "Transfer (outcome) -->"


class LedgerBook:
    """
    Local operations on one ledger.

    Every mutation goes straight to local storage and is picked up by
    the next sync round's diff.
    """

    def __init__(self, storage: LocalStorageInterface):
        self._storage = storage

    async def _state(self) -> LedgerState:
        return await self._storage.load_state()

    async def _require(self, kind: EntityKind, item_id: int):
        item = (await self._state()).of(kind).get(item_id)
        if item is None:
            raise NotFoundError(f"No active {kind.value} with id {item_id}")
        return item

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def add_account(self, name: str, opening_balance: int = 0) -> Account:
        """
        Open a new account.

        Raises:
            DuplicateError: If an active account already has this name
        """
        state = await self._state()
        if any(a.name == name.strip() for a in state.accounts.active.values()):
            raise DuplicateError(f"Account '{name}' already exists")

        account = Account(
            id=await self._storage.allocate_local_id(EntityKind.ACCOUNT),
            name=name,
            opening_balance=opening_balance,
            current_balance=opening_balance,
        )
        await self._storage.put(EntityKind.ACCOUNT, account)
        logger.info("account_added", account_id=account.id)
        return account

    async def update_account(
        self,
        account_id: int,
        name: Optional[str] = None,
        opening_balance: Optional[int] = None,
    ) -> Account:
        """Rename an account or correct its opening balance."""
        account: Account = await self._require(EntityKind.ACCOUNT, account_id)
        update = {}
        if name is not None:
            update["name"] = name
        if opening_balance is not None:
            update["opening_balance"] = opening_balance
            update["current_balance"] = (
                account.current_balance + opening_balance - account.opening_balance
            )
        updated = Account.model_validate({**account.model_dump(), **update})
        await self._storage.put(EntityKind.ACCOUNT, updated)
        return updated

    async def remove_account(self, account_id: int, force: bool = False) -> None:
        """
        Remove an account.

        Args:
            account_id: Account to remove
            force: Also remove all of its transactions

        Raises:
            NotFoundError: If the account is not active
            ReferenceInUseError: If it has transactions and force is False
        """
        await self._require(EntityKind.ACCOUNT, account_id)
        cascade = find_cascade(await self._state(), EntityKind.ACCOUNT, {account_id})
        transaction_ids = cascade.get(EntityKind.TRANSACTION, set())

        if transaction_ids and not force:
            raise ReferenceInUseError(
                f"Account {account_id} has {len(transaction_ids)} transactions"
            )

        for transaction_id in sorted(transaction_ids):
            await self._storage.remove(EntityKind.TRANSACTION, transaction_id)
        await self._storage.remove(EntityKind.ACCOUNT, account_id)
        logger.info("account_removed", account_id=account_id, cascaded=len(transaction_ids))

    async def account(self, account_id: int) -> Account:
        return await self._require(EntityKind.ACCOUNT, account_id)

    async def accounts(self) -> list[Account]:
        return (await self._state()).accounts.sorted_active()

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    async def add_category(self, name: str, category_type: CategoryType) -> Category:
        """
        Add a category.

        Raises:
            DuplicateError: If an active category of the same type has this name
        """
        state = await self._state()
        if any(
            c.name == name.strip() and c.category_type == category_type
            for c in state.categories.active.values()
        ):
            raise DuplicateError(f"{category_type.value.capitalize()} category '{name}' already exists")

        category = Category(
            id=await self._storage.allocate_local_id(EntityKind.CATEGORY),
            name=name,
            category_type=category_type,
        )
        await self._storage.put(EntityKind.CATEGORY, category)
        return category

    async def update_category(self, category_id: int, name: str) -> Category:
        """Rename a category. Predefined categories cannot be renamed."""
        if category_id in PREDEFINED_CATEGORY_IDS:
            raise ProtectedItemError(f"Category {category_id} is predefined")
        category: Category = await self._require(EntityKind.CATEGORY, category_id)
        updated = Category.model_validate({**category.model_dump(), "name": name})
        await self._storage.put(EntityKind.CATEGORY, updated)
        return updated

    async def remove_category(self, category_id: int) -> None:
        """
        Remove a category that nothing references.

        Raises:
            ProtectedItemError: For the predefined transfer categories
            NotFoundError: If the category is not active
            ReferenceInUseError: If active transactions or plans use it
        """
        if category_id in PREDEFINED_CATEGORY_IDS:
            raise ProtectedItemError(f"Category {category_id} is predefined")
        await self._require(EntityKind.CATEGORY, category_id)

        cascade = find_cascade(await self._state(), EntityKind.CATEGORY, {category_id})
        if cascade:
            users = ", ".join(
                f"{len(ids)} {kind.value}(s)" for kind, ids in sorted(cascade.items())
            )
            raise ReferenceInUseError(f"Category {category_id} is used by {users}")

        await self._storage.remove(EntityKind.CATEGORY, category_id)

    async def category(self, category_id: int) -> Category:
        return await self._require(EntityKind.CATEGORY, category_id)

    async def categories(self, category_type: Optional[CategoryType] = None) -> list[Category]:
        """All active categories, optionally only those of one type."""
        return [
            c for c in (await self._state()).categories.sorted_active()
            if category_type is None or c.category_type == category_type
        ]

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    async def add_transaction(
        self,
        account_id: int,
        category_id: int,
        amount: int,
        description: str = "",
        timestamp: Optional[datetime] = None,
    ) -> Transaction:
        """
        Record a transaction and add its amount to the account balance.

        Amount carries its sign: positive for income, negative for spending.

        Raises:
            NotFoundError: If the account or category is not active
        """
        account: Account = await self._require(EntityKind.ACCOUNT, account_id)
        await self._require(EntityKind.CATEGORY, category_id)

        transaction = Transaction(
            id=await self._storage.allocate_local_id(EntityKind.TRANSACTION),
            account_id=account_id,
            category_id=category_id,
            amount=amount,
            description=description,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        await self._storage.put(EntityKind.TRANSACTION, transaction)
        await self._storage.put(
            EntityKind.ACCOUNT,
            account.model_copy(update={"current_balance": account.current_balance + amount}),
        )
        return transaction

    async def add_transfer(
        self,
        amount: int,
        from_account: int,
        to_account: int,
    ) -> tuple[Transaction, Transaction]:
        """
        Move money between two accounts.

        Records two transactions with the same timestamp: +|amount| on
        to_account under the income transfer category, -|amount| on
        from_account under the outcome transfer category.

        Returns:
            (income transaction, outcome transaction)
        """
        amount = abs(amount)
        timestamp = datetime.now(timezone.utc)

        income = await self.add_transaction(
            account_id=to_account,
            category_id=TRANSFER_INCOME_ID,
            amount=amount,
            description=TRANSFER_INCOME_DESCRIPTION,
            timestamp=timestamp,
        )
        outcome = await self.add_transaction(
            account_id=from_account,
            category_id=TRANSFER_OUTCOME_ID,
            amount=-amount,
            description=TRANSFER_OUTCOME_DESCRIPTION,
            timestamp=timestamp,
        )
        return income, outcome

    async def remove_transaction(self, transaction_id: int) -> None:
        """Remove a transaction and take its amount off the account balance."""
        transaction: Transaction = await self._require(EntityKind.TRANSACTION, transaction_id)
        account = (await self._state()).accounts.get(transaction.account_id)

        await self._storage.remove(EntityKind.TRANSACTION, transaction_id)
        if account is not None:
            await self._storage.put(
                EntityKind.ACCOUNT,
                account.model_copy(
                    update={"current_balance": account.current_balance - transaction.amount}
                ),
            )

    async def transactions(
        self,
        account_id: Optional[int] = None,
        category_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Transaction]:
        """
        Active transactions, newest first.

        Args:
            account_id: Only transactions of this account
            category_id: Only transactions of this category
            start: Only transactions at or after this time
            end: Only transactions before this time
        """
        result = [
            t for t in (await self._state()).transactions.active.values()
            if (account_id is None or t.account_id == account_id)
            and (category_id is None or t.category_id == category_id)
            and (start is None or t.timestamp >= start)
            and (end is None or t.timestamp < end)
        ]
        result.sort(key=lambda t: (t.timestamp, t.id), reverse=True)
        return result

    # =========================================================================
    # PLANS
    # =========================================================================

    async def add_plan(self, category_id: int, monthly_limit: int, name: str) -> Plan:
        """Add a monthly limit for a category."""
        await self._require(EntityKind.CATEGORY, category_id)
        plan = Plan(
            id=await self._storage.allocate_local_id(EntityKind.PLAN),
            category_id=category_id,
            monthly_limit=monthly_limit,
            name=name,
        )
        await self._storage.put(EntityKind.PLAN, plan)
        return plan

    async def update_plan(
        self,
        plan_id: int,
        monthly_limit: Optional[int] = None,
        name: Optional[str] = None,
    ) -> Plan:
        plan: Plan = await self._require(EntityKind.PLAN, plan_id)
        update = {}
        if monthly_limit is not None:
            update["monthly_limit"] = monthly_limit
        if name is not None:
            update["name"] = name
        updated = Plan.model_validate({**plan.model_dump(), **update})
        await self._storage.put(EntityKind.PLAN, updated)
        return updated

    async def remove_plan(self, plan_id: int) -> None:
        await self._require(EntityKind.PLAN, plan_id)
        await self._storage.remove(EntityKind.PLAN, plan_id)

    async def plan(self, plan_id: int) -> Plan:
        return await self._require(EntityKind.PLAN, plan_id)

    async def plans(self) -> list[Plan]:
        return (await self._state()).plans.sorted_active()

    async def plans_for(self, category_id: int) -> list[Plan]:
        """Active plans limiting one category."""
        await self._require(EntityKind.CATEGORY, category_id)
        return [
            plan for plan in (await self._state()).plans.sorted_active()
            if plan.category_id == category_id
        ]


def create_ledger_components(
    password: Union[str, bytes],
    salt: bytes,
    settings: Optional[Settings] = None,
    use_storage: bool = True,
    remote: Optional[RemoteTransportInterface] = None,
) -> tuple[LedgerBook, SyncSession]:
    """
    Factory function to create all ledger components.

    Args:
        password: Ledger password
        salt: Ledger salt (see crypto.generate_salt)
        settings: Settings to use; configured ones if None
        use_storage: Whether to use the SQLite database from settings.
                    Set to False for in-memory storage (tests, demos).
        remote: Remote transport; if None, the directory transport is used
                when a remote directory is configured, otherwise an
                in-memory remote

    Returns:
        (ledger_book, sync_session)
    """
    settings = settings or get_settings()
    logging.getLogger("ledger_sync").setLevel(settings.app.log_level)
    cipher = LedgerCipher.from_password(password, salt, settings.crypto)
    storage_settings = settings.storage

    if use_storage:
        storage = SQLiteLedgerStorage(Path(storage_settings.database_path), cipher)
        audit_logger = AuditLogger(SQLiteAuditStorage(storage.database))
    else:
        storage = InMemoryLedgerStorage()
        audit_logger = AuditLogger(InMemoryAuditStorage())

    if remote is None:
        if storage_settings.remote_directory:
            remote = DirectoryRemoteStore(storage_settings.remote_directory)
        else:
            logger.warning("remote_not_configured", fallback="in_memory")
            remote = InMemoryRemoteStore()

    session = SyncSession(
        storage=storage,
        remote=remote,
        cipher=cipher,
        settings=settings.sync,
        audit_logger=audit_logger,
    )
    return LedgerBook(storage), session
