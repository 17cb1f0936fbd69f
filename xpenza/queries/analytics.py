"""
Ledger Analytics

Deterministic aggregations over the transactions the store currently
holds. Pure functions: they read records and never touch the store.
"""

from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from xpenza.models.finance import Transaction, TransactionType


class LedgerSummary(BaseModel):
    """Totals of a set of transactions."""
    model_config = ConfigDict(frozen=True)

    income: Decimal = Decimal("0")
    expense: Decimal = Decimal("0")
    count: int = 0

    @property
    def balance(self) -> Decimal:
        return self.income - self.expense


class CategoryTotal(BaseModel):
    """One row of a category breakdown."""
    model_config = ConfigDict(frozen=True)

    category: str
    amount: Decimal
    percentage: float


def summarize(transactions: Iterable[Transaction]) -> LedgerSummary:
    income = Decimal("0")
    expense = Decimal("0")
    count = 0
    for transaction in transactions:
        if transaction.type == TransactionType.INCOME:
            income += transaction.amount
        else:
            expense += transaction.amount
        count += 1
    return LedgerSummary(income=income, expense=expense, count=count)


def category_totals(
    transactions: Iterable[Transaction],
    transaction_type: TransactionType = TransactionType.EXPENSE,
) -> dict[str, Decimal]:
    """Sum amounts per category for one transaction type."""
    totals: dict[str, Decimal] = {}
    for transaction in transactions:
        if transaction.type != transaction_type:
            continue
        totals[transaction.category] = (
            totals.get(transaction.category, Decimal("0")) + transaction.amount
        )
    return totals


def category_breakdown(
    transactions: Iterable[Transaction],
    transaction_type: TransactionType = TransactionType.EXPENSE,
) -> list[CategoryTotal]:
    """
    Category totals with their share of the type total, largest first.

    Ties keep first-seen order. Percentages are 0 when the total is 0.
    """
    totals = category_totals(transactions, transaction_type)
    grand_total = sum(totals.values(), Decimal("0"))

    rows = [
        CategoryTotal(
            category=category,
            amount=amount,
            percentage=float(amount / grand_total * 100) if grand_total > 0 else 0.0,
        )
        for category, amount in totals.items()
    ]
    rows.sort(key=lambda row: row.amount, reverse=True)
    return rows
