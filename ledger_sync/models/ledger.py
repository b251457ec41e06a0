"""
Ledger Entity Model

Defines the four entity kinds (Account, Category, Transaction, Plan) and
the active/removed-set semantics of a ledger state.

A state is a tuple over all four kinds, s = (T, P, C, A), and for each
kind X = (X_active, X_removed): two disjoint sets keyed by identifier.

IDENTITY:
- Durable identifiers are positive integers assigned by the merge that
  runs under the ledger lease. Once assigned they never change.
- Local identifiers are negative integers handed out by a client before
  its first successful sync round-trip for that item.
- Zero is never a valid identifier.

DESIGN DECISION: Entities are immutable pydantic models.
Every change produces a new instance (model_copy), so a state can be
snapshotted by a deep copy and compared field-by-field for diffing.

All query functions in this module are pure: they never mutate the
state they are given.
"""

import hashlib
import json
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Generic, Optional, TypeVar, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# =============================================================================
# ENUMS
# =============================================================================

class EntityKind(str, Enum):
    """The four kinds of ledger items."""
    ACCOUNT = "account"
    CATEGORY = "category"
    TRANSACTION = "transaction"
    PLAN = "plan"


# Parents first, so references can be checked once their targets are merged
MERGE_ORDER: tuple[EntityKind, ...] = (
    EntityKind.ACCOUNT,
    EntityKind.CATEGORY,
    EntityKind.TRANSACTION,
    EntityKind.PLAN,
)


class CategoryType(str, Enum):
    """Direction of money flow for a category."""
    INCOME = "income"
    EXPENSE = "expense"


class IdentityKind(str, Enum):
    """Whether an identifier is client-scoped or remote-assigned."""
    LOCAL = "local"
    DURABLE = "durable"


# =============================================================================
# PREDEFINED ITEMS
# =============================================================================

# Present in every ledger from the start, on every client and on the remote,
# so they carry durable identifiers without ever being created by a diff.
TRANSFER_INCOME_ID = 1
TRANSFER_OUTCOME_ID = 2
TRANSFER_INCOME_NAME = "Transfer (income)"
TRANSFER_OUTCOME_NAME = "Transfer (outcome)"
PREDEFINED_CATEGORY_IDS = frozenset({TRANSFER_INCOME_ID, TRANSFER_OUTCOME_ID})

# Amounts, opening balances and limits are 64-bit signed values. A balance
# sums many of them, so it gets 128 bits.
INT64_MIN = -2 ** 63
INT64_MAX = 2 ** 63 - 1
BALANCE_MIN = -2 ** 127
BALANCE_MAX = 2 ** 127 - 1


# =============================================================================
# ENTITIES
# =============================================================================

class LedgerEntity(BaseModel):
    """
    Base class for all ledger items.

    Subclasses declare their kind, which fields hold references to other
    items, and which fields are derived (not compared when diffing).
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    KIND: ClassVar[EntityKind]
    REFERENCE_FIELDS: ClassVar[dict[str, EntityKind]] = {}
    DERIVED_FIELDS: ClassVar[frozenset[str]] = frozenset()

    id: int = Field(
        ...,
        description="Local (negative) or durable (positive) identifier"
    )

    @field_validator('id')
    @classmethod
    def validate_id(cls, v: int) -> int:
        """Zero is reserved as 'no identifier'."""
        if v == 0:
            raise ValueError("Identifier 0 is not valid")
        return v

    def synced_fields(self) -> dict:
        """Fields that travel in diffs, without the identifier."""
        return self.model_dump(exclude={"id", *self.DERIVED_FIELDS})

    def digest(self) -> str:
        """SHA-256 of the synced fields; equal digests mean the same change."""
        fields = self.model_dump(mode="json", exclude={"id", *self.DERIVED_FIELDS})
        encoded = json.dumps(fields, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def with_id(self, new_id: int) -> "LedgerEntity":
        return self.model_copy(update={"id": new_id})


class Account(LedgerEntity):
    """
    A money account.

    current_balance is a cached aggregate. It is recomputed from
    opening_balance and the active transactions after every merge and is
    never compared when diffing.
    """
    KIND: ClassVar[EntityKind] = EntityKind.ACCOUNT
    DERIVED_FIELDS: ClassVar[frozenset[str]] = frozenset({"current_balance"})

    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="User-friendly account name"
    )
    current_balance: int = Field(
        default=0,
        ge=BALANCE_MIN,
        le=BALANCE_MAX,
        description="Cached balance in minor units"
    )
    opening_balance: int = Field(
        default=0,
        ge=INT64_MIN,
        le=INT64_MAX,
        description="Balance the account was opened with, in minor units"
    )


class Category(LedgerEntity):
    """An income or expense category."""
    KIND: ClassVar[EntityKind] = EntityKind.CATEGORY

    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Category name"
    )
    category_type: CategoryType = Field(
        ...,
        description="Income or expense"
    )


class Transaction(LedgerEntity):
    """
    A single movement of money on an account.

    Amount carries its sign: incomes are positive, spendings negative.
    """
    KIND: ClassVar[EntityKind] = EntityKind.TRANSACTION
    REFERENCE_FIELDS: ClassVar[dict[str, EntityKind]] = {
        "account_id": EntityKind.ACCOUNT,
        "category_id": EntityKind.CATEGORY,
    }

    account_id: int = Field(
        ...,
        description="Account the transaction belongs to"
    )
    category_id: int = Field(
        ...,
        description="Category of the transaction"
    )
    amount: int = Field(
        ...,
        ge=INT64_MIN,
        le=INT64_MAX,
        description="Signed amount in minor units"
    )
    description: str = Field(
        default="",
        max_length=500,
        description="Brief description"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the transaction happened (UTC)"
    )


class Plan(LedgerEntity):
    """A monthly spending limit for a category."""
    KIND: ClassVar[EntityKind] = EntityKind.PLAN
    REFERENCE_FIELDS: ClassVar[dict[str, EntityKind]] = {
        "category_id": EntityKind.CATEGORY,
    }

    category_id: int = Field(
        ...,
        description="Category the plan limits"
    )
    monthly_limit: int = Field(
        ...,
        ge=0,
        le=INT64_MAX,
        description="Monthly limit in minor units"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Plan name"
    )


ENTITY_TYPES: dict[EntityKind, type[LedgerEntity]] = {
    EntityKind.ACCOUNT: Account,
    EntityKind.CATEGORY: Category,
    EntityKind.TRANSACTION: Transaction,
    EntityKind.PLAN: Plan,
}

# Attribute name of each kind on per-kind containers
KIND_FIELDS: dict[EntityKind, str] = {
    EntityKind.ACCOUNT: "accounts",
    EntityKind.CATEGORY: "categories",
    EntityKind.TRANSACTION: "transactions",
    EntityKind.PLAN: "plans",
}


# =============================================================================
# STATE
# =============================================================================

EntityT = TypeVar("EntityT", bound=LedgerEntity)


class EntitySet(BaseModel, Generic[EntityT]):
    """
    Active and removed items of one kind.

    INVARIANT: active and removed never share an identifier.
    Use put() and tombstone() rather than touching the containers directly.
    """

    active: dict[int, EntityT] = Field(
        default_factory=dict,
        description="Live items keyed by identifier"
    )
    removed: set[int] = Field(
        default_factory=set,
        description="Tombstoned identifiers (never erased)"
    )

    @model_validator(mode='after')
    def validate_disjoint(self) -> 'EntitySet':
        overlap = self.active.keys() & self.removed
        if overlap:
            raise ValueError(f"Identifiers both active and removed: {sorted(overlap)}")
        for key, item in self.active.items():
            if key != item.id:
                raise ValueError(f"Item keyed {key} carries identifier {item.id}")
        return self

    def put(self, item: EntityT) -> None:
        """Insert or overwrite an active item. Tombstoned ids are refused."""
        if item.id in self.removed:
            raise ValueError(f"Identifier {item.id} is tombstoned")
        self.active[item.id] = item

    def tombstone(self, item_id: int) -> bool:
        """
        Move an identifier to the removed set.

        Returns True if an active item was removed by this call.
        """
        was_active = self.active.pop(item_id, None) is not None
        self.removed.add(item_id)
        return was_active

    def get(self, item_id: int) -> Optional[EntityT]:
        return self.active.get(item_id)

    def __contains__(self, item_id: int) -> bool:
        return item_id in self.active

    def sorted_active(self) -> list[EntityT]:
        return [self.active[key] for key in sorted(self.active)]


class LedgerState(BaseModel):
    """
    Full state of a ledger on one client (or on the remote).

    State at time t is s = (T, P, C, A).
    """

    accounts: EntitySet[Account] = Field(default_factory=EntitySet[Account])
    categories: EntitySet[Category] = Field(default_factory=EntitySet[Category])
    transactions: EntitySet[Transaction] = Field(default_factory=EntitySet[Transaction])
    plans: EntitySet[Plan] = Field(default_factory=EntitySet[Plan])

    @classmethod
    def bootstrap(cls) -> "LedgerState":
        """A fresh ledger holding only the predefined transfer categories."""
        state = cls()
        state.categories.put(Category(
            id=TRANSFER_INCOME_ID,
            name=TRANSFER_INCOME_NAME,
            category_type=CategoryType.INCOME,
        ))
        state.categories.put(Category(
            id=TRANSFER_OUTCOME_ID,
            name=TRANSFER_OUTCOME_NAME,
            category_type=CategoryType.EXPENSE,
        ))
        return state

    def of(self, kind: EntityKind) -> EntitySet:
        """Return the entity set for a kind."""
        return getattr(self, KIND_FIELDS[kind])

    def clone(self) -> "LedgerState":
        return self.model_copy(deep=True)


# =============================================================================
# QUERIES
# =============================================================================

def classify(item_or_id: Union[LedgerEntity, int]) -> IdentityKind:
    """Tell whether an item (or bare identifier) is local or durable."""
    item_id = item_or_id.id if isinstance(item_or_id, LedgerEntity) else item_or_id
    if item_id == 0:
        raise ValueError("Identifier 0 is not valid")
    return IdentityKind.LOCAL if item_id < 0 else IdentityKind.DURABLE


def is_local(item_id: int) -> bool:
    return classify(item_id) is IdentityKind.LOCAL


def is_tombstoned(state: LedgerState, kind: EntityKind, item_id: int) -> bool:
    """Has this identifier been removed in the given state?"""
    return item_id in state.of(kind).removed


def iter_references(item: LedgerEntity) -> Iterator[tuple[str, EntityKind, int]]:
    """Yield (field, target kind, target id) for every reference an item holds."""
    for field_name, target_kind in item.REFERENCE_FIELDS.items():
        yield field_name, target_kind, getattr(item, field_name)


def rewrite_references(
    item: EntityT,
    resolve: Callable[[EntityKind, int], Optional[int]],
) -> EntityT:
    """
    Return a copy of item with every reference passed through resolve.

    References that resolve to None are left untouched.
    """
    update = {}
    for field_name, target_kind, target_id in iter_references(item):
        resolved = resolve(target_kind, target_id)
        if resolved is not None and resolved != target_id:
            update[field_name] = resolved
    return item.model_copy(update=update) if update else item


def find_cascade(
    state: LedgerState,
    kind: EntityKind,
    removed_ids: set[int],
) -> dict[EntityKind, set[int]]:
    """
    Find the active items that must be tombstoned along with removed parents.

    - removed Accounts cascade to their Transactions
    - removed Categories cascade to their Transactions and Plans

    Returns {kind: identifiers}; kinds with nothing to cascade are omitted.
    """
    result: dict[EntityKind, set[int]] = {}
    if not removed_ids:
        return result

    for child_kind in (EntityKind.TRANSACTION, EntityKind.PLAN):
        hits = set()
        for child in state.of(child_kind).active.values():
            for _, target_kind, target_id in iter_references(child):
                if target_kind is kind and target_id in removed_ids:
                    hits.add(child.id)
        if hits:
            result[child_kind] = hits

    return result


def find_dangling(state: LedgerState) -> list[tuple[EntityKind, LedgerEntity, str]]:
    """
    List active items whose references do not resolve to an active target.

    Returns (kind, item, offending field) in deterministic order.
    """
    dangling = []
    for kind in (EntityKind.TRANSACTION, EntityKind.PLAN):
        for item in state.of(kind).sorted_active():
            for field_name, target_kind, target_id in iter_references(item):
                if target_id not in state.of(target_kind).active:
                    dangling.append((kind, item, field_name))
                    break
    return dangling


def compute_balances(state: LedgerState) -> dict[int, int]:
    """Balance of every active account: opening balance plus active transactions."""
    balances = {
        account.id: account.opening_balance
        for account in state.accounts.active.values()
    }
    for transaction in state.transactions.active.values():
        if transaction.account_id in balances:
            balances[transaction.account_id] += transaction.amount
    return balances
