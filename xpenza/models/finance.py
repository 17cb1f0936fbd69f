"""
Core Data Models for Xpenza

These models define the records the synchronization store keeps in memory
and exchanges with the remote document store. They are designed to:
1. Enforce the money invariants at runtime (amounts are never negative)
2. Be immutable, so a state snapshot can be kept and restored verbatim
3. Round-trip through the remote payload and the local cache as JSON

DESIGN DECISION: The sign of a transaction lives in its type, never in
its amount. Reports and analytics rely on this.
"""

import datetime as dt
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Direction of money for a transaction."""
    INCOME = "income"
    EXPENSE = "expense"


class CategoryType(str, Enum):
    """Which transaction types a category applies to."""
    INCOME = "income"
    EXPENSE = "expense"
    BOTH = "both"


class RecordState(str, Enum):
    """
    Synchronization state of a locally held record.

    PENDING -> CONFIRMED on a successful remote write.
    PENDING -> UNSYNCED when the remote write fails; the record is kept
    locally but is known not to be durable.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    UNSYNCED = "unsynced"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Fields that only exist on the client and are never written remotely
LOCAL_ONLY_FIELDS = {"id", "state"}


# =============================================================================
# LEDGER
# =============================================================================

class Ledger(BaseModel):
    """
    A named book of transactions.

    `id` is the temporary token until the remote store assigns one;
    `client_key` stays equal to the temporary token for the life of the
    record and is stored remotely, so pushes can be matched back to the
    optimistic copy.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    client_key: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Display name of the book"
    )
    icon: str = Field(default="book", max_length=50)
    color: str = Field(default="#4F46E5", max_length=20)
    created_at: datetime = Field(default_factory=utc_now)
    state: RecordState = RecordState.CONFIRMED

    @property
    def is_syncing(self) -> bool:
        return self.state == RecordState.PENDING

    def to_document(self) -> dict[str, Any]:
        """Remote payload: everything except the local-only fields."""
        return self.model_dump(mode="json", exclude=LOCAL_ONLY_FIELDS)

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> "Ledger":
        payload = {k: v for k, v in data.items() if k not in LOCAL_ONLY_FIELDS}
        payload.setdefault("client_key", doc_id)
        return cls(id=doc_id, state=RecordState.CONFIRMED, **payload)


# =============================================================================
# TRANSACTION
# =============================================================================

class TransactionDraft(BaseModel):
    """
    What the user entered on the add-transaction screen.

    Identity, ownership and timestamps are assigned by the store.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(default=None, max_length=200)
    amount: Decimal = Field(
        ...,
        ge=0,
        description="Non-negative amount; the type carries the sign"
    )
    category: str = Field(default="Other", min_length=1, max_length=100)
    type: TransactionType
    note: Optional[str] = Field(default=None, max_length=1000)
    date: Optional[dt.date] = None

    def resolved_title(self) -> str:
        """Title shown in lists: explicit title, else note, else category."""
        return self.title or self.note or self.category or "Untitled"


class TransactionPatch(BaseModel):
    """
    Partial update of a transaction.

    Only fields explicitly passed are applied (see `changes`).
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount: Optional[Decimal] = Field(default=None, ge=0)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[TransactionType] = None
    note: Optional[str] = Field(default=None, max_length=1000)
    date: Optional[dt.date] = None

    def changes(self) -> dict[str, Any]:
        """Python-typed values of the fields that were set."""
        return self.model_dump(exclude_unset=True)

    def remote_changes(self) -> dict[str, Any]:
        """JSON-typed values of the fields that were set."""
        return self.model_dump(mode="json", exclude_unset=True)


class Transaction(BaseModel):
    """
    A single income or expense entry.

    `is_syncing` is derived from `state` and never leaves the client.
    `ledger_id` is optional only to tolerate documents written before
    ledgers existed; the store never creates one without it.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    client_key: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    ledger_id: Optional[str] = None

    title: str = Field(..., max_length=200)
    amount: Decimal = Field(..., ge=0)
    date: dt.date
    category: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    note: Optional[str] = Field(default=None, max_length=1000)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    state: RecordState = RecordState.CONFIRMED

    @property
    def is_syncing(self) -> bool:
        return self.state == RecordState.PENDING

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.type == TransactionType.INCOME else -self.amount

    def to_document(self) -> dict[str, Any]:
        """Remote payload: the record without its id and sync state."""
        return self.model_dump(mode="json", exclude=LOCAL_ONLY_FIELDS)

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> "Transaction":
        payload = {k: v for k, v in data.items() if k not in LOCAL_ONLY_FIELDS}
        payload.setdefault("client_key", doc_id)
        return cls(id=doc_id, state=RecordState.CONFIRMED, **payload)


# =============================================================================
# CATEGORY
# =============================================================================

class Category(BaseModel):
    """
    Display metadata for a category.

    Transactions store the category *name*; this record is not a
    foreign key and the store never enforces the relationship.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = Field(default="grid", max_length=50)
    is_custom: bool = False
    type: Optional[CategoryType] = None

    def applies_to(self, transaction_type: TransactionType) -> bool:
        """Untyped and "both" categories apply to every transaction type."""
        if self.type is None or self.type == CategoryType.BOTH:
            return True
        return self.type.value == transaction_type.value

    def to_document(self, owner_id: str) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"id"})
        data["owner_id"] = owner_id
        return data

    @classmethod
    def from_document(cls, doc_id: str, data: dict[str, Any]) -> "Category":
        return cls(
            id=doc_id,
            name=data["name"],
            icon=data.get("icon") or "grid",
            is_custom=True,
            type=data.get("type"),
        )


DEFAULT_EXPENSE_CATEGORIES: tuple[Category, ...] = (
    Category(id="exp-1", name="Food", icon="fast-food", type=CategoryType.EXPENSE),
    Category(id="exp-2", name="Transport", icon="car", type=CategoryType.EXPENSE),
    Category(id="exp-3", name="Housing", icon="home", type=CategoryType.EXPENSE),
    Category(id="exp-4", name="Shopping", icon="cart", type=CategoryType.EXPENSE),
    Category(id="exp-5", name="Entertainment", icon="game-controller", type=CategoryType.EXPENSE),
    Category(id="exp-6", name="Health", icon="medkit", type=CategoryType.EXPENSE),
    Category(id="exp-7", name="Education", icon="school", type=CategoryType.EXPENSE),
    Category(id="exp-8", name="Bills & Utilities", icon="receipt", type=CategoryType.EXPENSE),
)

DEFAULT_INCOME_CATEGORIES: tuple[Category, ...] = (
    Category(id="inc-1", name="Salary", icon="cash", type=CategoryType.INCOME),
    Category(id="inc-2", name="Freelance", icon="briefcase", type=CategoryType.INCOME),
    Category(id="inc-3", name="Business", icon="business", type=CategoryType.INCOME),
    Category(id="inc-4", name="Investment", icon="trending-up", type=CategoryType.INCOME),
    Category(id="inc-5", name="Gift", icon="gift", type=CategoryType.INCOME),
    Category(id="inc-6", name="Refund", icon="return-down-back", type=CategoryType.INCOME),
)

DEFAULT_CATEGORIES: tuple[Category, ...] = (
    *DEFAULT_EXPENSE_CATEGORIES,
    *DEFAULT_INCOME_CATEGORIES,
    Category(id="both-1", name="Other", icon="grid", type=CategoryType.BOTH),
)
