"""Tests for analytics and CSV reports."""

import csv
import io
from datetime import date, datetime, timezone
from decimal import Decimal

from xpenza.models import Ledger, Transaction, TransactionType
from xpenza.queries import category_breakdown, category_totals, summarize
from xpenza.reports import REPORT_COLUMNS, generate_csv_report


def tx(category, amount, tx_type=TransactionType.EXPENSE, ledger_id="l-1", day=1, doc_id=None):
    return Transaction(
        id=doc_id or f"{category}-{amount}-{day}",
        client_key=doc_id or f"{category}-{amount}-{day}",
        owner_id="u",
        ledger_id=ledger_id,
        title=category,
        amount=Decimal(amount),
        date=date(2024, 5, day),
        category=category,
        type=tx_type,
        created_at=datetime(2024, 5, day, tzinfo=timezone.utc),
    )


class TestAnalytics:
    """Tests for totals and breakdowns."""

    def test_equal_categories_split_evenly(self):
        """Food 30 and Transport 30 are 50% each."""
        transactions = [
            tx("Food", "10", day=1),
            tx("Food", "20", day=2),
            tx("Transport", "30", day=3),
            tx("Salary", "500", TransactionType.INCOME, day=4),
        ]

        assert category_totals(transactions) == {
            "Food": Decimal("30"),
            "Transport": Decimal("30"),
        }
        breakdown = category_breakdown(transactions)
        assert [row.category for row in breakdown] == ["Food", "Transport"]
        assert [row.percentage for row in breakdown] == [50.0, 50.0]

    def test_breakdown_is_sorted_by_amount(self):
        """Largest category first."""
        transactions = [tx("Food", "10"), tx("Housing", "90")]

        breakdown = category_breakdown(transactions)

        assert [row.category for row in breakdown] == ["Housing", "Food"]
        assert breakdown[0].percentage == 90.0

    def test_income_breakdown(self):
        """Breakdowns can be taken for income too."""
        transactions = [
            tx("Salary", "300", TransactionType.INCOME),
            tx("Gift", "100", TransactionType.INCOME),
            tx("Food", "50"),
        ]

        breakdown = category_breakdown(transactions, TransactionType.INCOME)

        assert [(r.category, r.percentage) for r in breakdown] == [("Salary", 75.0), ("Gift", 25.0)]

    def test_empty(self):
        """No transactions, no rows, zero totals."""
        assert category_breakdown([]) == []
        summary = summarize([])
        assert summary.count == 0
        assert summary.balance == Decimal("0")

    def test_summary(self):
        """Balance is income minus expense."""
        summary = summarize([
            tx("Salary", "100", TransactionType.INCOME),
            tx("Food", "30"),
            tx("Transport", "20"),
        ])

        assert summary.income == Decimal("100")
        assert summary.expense == Decimal("50")
        assert summary.balance == Decimal("50")
        assert summary.count == 3


class TestCsvReport:
    """Tests for the CSV report."""

    def test_report_content(self):
        """Rows are the ledger's transactions oldest first, then a summary."""
        ledger = Ledger(id="l-1", client_key="tmp-l", owner_id="u", name="Home Book")
        transactions = [
            tx("Food", "12.5", day=3),
            tx("Salary", "100", TransactionType.INCOME, day=1),
            tx("Travel", "40", ledger_id="other", day=2),
        ]

        report = generate_csv_report(ledger, transactions, "$")

        assert report.filename == "home-book-report.csv"
        assert report.content_type == "text/csv"
        rows = list(csv.reader(io.StringIO(report.content)))
        assert rows[0] == REPORT_COLUMNS
        assert rows[1][:5] == ["2024-05-01", "Salary", "Salary", "income", "100.00"]
        assert rows[2][:5] == ["2024-05-03", "Food", "Food", "expense", "-12.50"]
        assert rows[3] == []
        assert ["Ledger", "Home Book"] in rows
        assert ["Total income", "$100.00"] in rows
        assert ["Total expense", "$12.50"] in rows
        assert ["Balance", "$87.50"] in rows
        assert ["Transactions", "2"] in rows
