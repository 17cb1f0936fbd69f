"""
Ledger CSV Report

A report is a pure function of (ledger, transactions, currency symbol).
The caller decides what to do with the document (save, share, print).
"""

import csv
import io
import re
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from xpenza.models.finance import Ledger, Transaction
from xpenza.queries.analytics import summarize

REPORT_COLUMNS = ["date", "title", "category", "type", "amount", "note"]


class ReportDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    content_type: str = "text/csv"
    content: str


def _slug(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "ledger"


def generate_csv_report(
    ledger: Ledger,
    transactions: Iterable[Transaction],
    currency_symbol: str,
) -> ReportDocument:
    """
    Render the ledger's transactions, oldest first, followed by a summary.

    Only transactions belonging to `ledger` are included.
    """
    rows = sorted(
        (t for t in transactions if t.ledger_id in (ledger.id, ledger.client_key)),
        key=lambda t: (t.date, t.created_at),
    )
    summary = summarize(rows)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(REPORT_COLUMNS)
    for t in rows:
        writer.writerow([
            t.date.isoformat(),
            t.title,
            t.category,
            t.type.value,
            f"{t.signed_amount:.2f}",
            t.note or "",
        ])

    writer.writerow([])
    writer.writerow(["Ledger", ledger.name])
    writer.writerow(["Total income", f"{currency_symbol}{summary.income:.2f}"])
    writer.writerow(["Total expense", f"{currency_symbol}{summary.expense:.2f}"])
    writer.writerow(["Balance", f"{currency_symbol}{summary.balance:.2f}"])
    writer.writerow(["Transactions", summary.count])

    return ReportDocument(
        filename=f"{_slug(ledger.name)}-report.csv",
        content=output.getvalue(),
    )
