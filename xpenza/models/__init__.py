"""
Data Models Package

This package contains all Pydantic models used by the Xpenza sync core.
All data held in the store or sent to the remote store conforms to these schemas.
"""

from xpenza.models.finance import (
    DEFAULT_CATEGORIES,
    DEFAULT_EXPENSE_CATEGORIES,
    DEFAULT_INCOME_CATEGORIES,
    Category,
    CategoryType,
    Ledger,
    RecordState,
    Transaction,
    TransactionDraft,
    TransactionPatch,
    TransactionType,
)
from xpenza.models.currency import (
    SUPPORTED_CURRENCIES,
    Currency,
    find_currency,
)
from xpenza.models.results import (
    CommandResult,
    CommandStatus,
    PreconditionReason,
)
from xpenza.models.audit import (
    SyncEvent,
    SyncEventBuilder,
    SyncEventType,
    SyncSeverity,
)

__all__ = [
    # Finance models
    "DEFAULT_CATEGORIES",
    "DEFAULT_EXPENSE_CATEGORIES",
    "DEFAULT_INCOME_CATEGORIES",
    "Category",
    "CategoryType",
    "Ledger",
    "RecordState",
    "Transaction",
    "TransactionDraft",
    "TransactionPatch",
    "TransactionType",
    # Currency
    "SUPPORTED_CURRENCIES",
    "Currency",
    "find_currency",
    # Results
    "CommandResult",
    "CommandStatus",
    "PreconditionReason",
    # Sync events
    "SyncEvent",
    "SyncEventBuilder",
    "SyncEventType",
    "SyncSeverity",
]
