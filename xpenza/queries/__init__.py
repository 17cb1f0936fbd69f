"""Analytics over store contents."""

from xpenza.queries.analytics import (
    CategoryTotal,
    LedgerSummary,
    category_breakdown,
    category_totals,
    summarize,
)

__all__ = [
    "CategoryTotal",
    "LedgerSummary",
    "category_breakdown",
    "category_totals",
    "summarize",
]
