"""
Tests for Xpenza models

Test strategy:
1. Unit tests for individual components (models, builders, analytics)
2. Flow tests for the sync store against in-memory fakes
3. No real API calls in tests
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from pydantic import ValidationError

from xpenza.models import (
    DEFAULT_CATEGORIES,
    Category,
    CategoryType,
    CommandResult,
    CommandStatus,
    Ledger,
    PreconditionReason,
    RecordState,
    Transaction,
    TransactionDraft,
    TransactionPatch,
    TransactionType,
    find_currency,
)


def make_transaction(**overrides):
    fields = dict(
        id="doc-1",
        client_key="tmp-1",
        owner_id="user-1",
        ledger_id="ledger-1",
        title="Lunch",
        amount=Decimal("12.50"),
        date=date(2024, 5, 1),
        category="Food",
        type=TransactionType.EXPENSE,
        created_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return Transaction(**fields)


class TestTransactionModels:
    """Tests for transaction-related Pydantic models."""

    def test_document_excludes_local_fields(self):
        """id and sync state never reach the remote store."""
        transaction = make_transaction(state=RecordState.PENDING)

        document = transaction.to_document()

        assert "id" not in document
        assert "state" not in document
        assert document["client_key"] == "tmp-1"
        assert document["amount"] == "12.50"
        assert document["date"] == "2024-05-01"

    def test_from_document(self):
        """Remote documents are confirmed records keyed by their doc id."""
        document = make_transaction().to_document()

        transaction = Transaction.from_document("server-9", document)

        assert transaction.id == "server-9"
        assert transaction.client_key == "tmp-1"
        assert transaction.state == RecordState.CONFIRMED
        assert transaction.amount == Decimal("12.50")

    def test_from_legacy_document_without_client_key(self):
        """Documents written by older clients use their id as client_key."""
        document = make_transaction().to_document()
        del document["client_key"]

        transaction = Transaction.from_document("server-9", document)

        assert transaction.client_key == "server-9"

    def test_negative_amount_rejected(self):
        """Amounts are non-negative; the type carries the sign."""
        with pytest.raises(ValidationError):
            make_transaction(amount=Decimal("-1"))

    def test_signed_amount(self):
        """Income counts positive, expense negative."""
        assert make_transaction().signed_amount == Decimal("-12.50")
        income = make_transaction(type=TransactionType.INCOME)
        assert income.signed_amount == Decimal("12.50")

    def test_is_syncing(self):
        """Only pending records are syncing."""
        assert make_transaction(state=RecordState.PENDING).is_syncing
        assert not make_transaction(state=RecordState.UNSYNCED).is_syncing

    def test_records_are_immutable(self):
        """State changes go through model_copy."""
        transaction = make_transaction()

        with pytest.raises(ValidationError):
            transaction.title = "Changed"

    def test_draft_title_fallback(self):
        """Title, else note, else category."""
        draft = TransactionDraft(amount=Decimal("1"), type=TransactionType.EXPENSE)
        assert draft.resolved_title() == "Other"
        draft = TransactionDraft(amount=Decimal("1"), type=TransactionType.EXPENSE, note="  Taxi  ")
        assert draft.resolved_title() == "Taxi"

    def test_patch_only_reports_set_fields(self):
        """Unset fields are not applied."""
        patch = TransactionPatch(amount=Decimal("3.10"), note=None)

        assert patch.changes() == {"amount": Decimal("3.10"), "note": None}
        assert patch.remote_changes() == {"amount": "3.10", "note": None}


class TestLedgerModel:
    """Tests for the ledger model."""

    def test_defaults(self):
        """New ledgers are confirmed with the default look."""
        ledger = Ledger(id="l-1", client_key="l-1", owner_id="u", name="  Home  ")

        assert ledger.name == "Home"
        assert ledger.icon == "book"
        assert ledger.state == RecordState.CONFIRMED

    def test_document_round_trip_keeps_client_key(self):
        """The temporary id travels with the document."""
        ledger = Ledger(id="tmp-1", client_key="tmp-1", owner_id="u", name="Home",
                        state=RecordState.PENDING)

        restored = Ledger.from_document("srv-1", ledger.to_document())

        assert restored.id == "srv-1"
        assert restored.client_key == "tmp-1"
        assert restored.state == RecordState.CONFIRMED


class TestCategoryModel:
    """Tests for category metadata."""

    def test_defaults(self):
        """Fourteen typed built-ins plus a shared fallback."""
        assert len(DEFAULT_CATEGORIES) == 15
        assert len({c.id for c in DEFAULT_CATEGORIES}) == 15
        assert not any(c.is_custom for c in DEFAULT_CATEGORIES)

    def test_applies_to(self):
        """Shared and untyped categories apply to every type."""
        food = Category(id="1", name="Food", type=CategoryType.EXPENSE)
        other = Category(id="2", name="Other", type=CategoryType.BOTH)
        untyped = Category(id="3", name="Misc")

        assert food.applies_to(TransactionType.EXPENSE)
        assert not food.applies_to(TransactionType.INCOME)
        assert other.applies_to(TransactionType.INCOME)
        assert untyped.applies_to(TransactionType.INCOME)

    def test_document_carries_owner(self):
        """Custom categories are scoped to their owner."""
        category = Category(id="c", name="Pets", is_custom=True)

        document = category.to_document("user-1")

        assert document["owner_id"] == "user-1"
        assert "id" not in document
        assert Category.from_document("c", document).is_custom


class TestCurrency:
    """Tests for currency lookup."""

    def test_find_currency(self):
        """Lookup is case-insensitive."""
        assert find_currency("eur").symbol == "€"
        assert find_currency("XXX") is None


class TestCommandResult:
    """Tests for command outcomes."""

    def test_constructors(self):
        """Each constructor sets a matching status."""
        assert CommandResult.success("id").ok
        failed = CommandResult.precondition_failed(PreconditionReason.NOT_FOUND, "x")
        assert failed.status == CommandStatus.PRECONDITION_FAILED
        assert not failed.ok
        assert CommandResult.remote_failed("down").error_message == "down"
