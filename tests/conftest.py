"""Shared fixtures: every external collaborator is an in-process fake."""

from decimal import Decimal

import pytest

from xpenza.audit import SyncAuditLogger
from xpenza.config import SyncSettings
from xpenza.models import TransactionDraft, TransactionType
from xpenza.services.identity import SessionIdentityProvider, UserProfile
from xpenza.services.storage import InMemoryCache, InMemoryDocumentStore
from xpenza.sync import SyncStore


USER_ID = "user-1"


def make_draft(amount="10.00", category="Food", tx_type=TransactionType.EXPENSE, **kwargs):
    return TransactionDraft(
        amount=Decimal(amount),
        category=category,
        type=tx_type,
        **kwargs,
    )


def transaction_document(ledger_id=None, amount="5.00", category="Food", owner_id=USER_ID):
    """A transaction as another device would have written it."""
    data = {
        "owner_id": owner_id,
        "title": category,
        "amount": amount,
        "date": "2024-05-01",
        "category": category,
        "type": "expense",
        "note": None,
        "created_at": "2024-05-01T10:00:00+00:00",
        "updated_at": None,
    }
    if ledger_id is not None:
        data["ledger_id"] = ledger_id
    return data


def ledger_document(name="Remote Book", owner_id=USER_ID, created_at="2024-01-01T00:00:00+00:00"):
    return {
        "owner_id": owner_id,
        "name": name,
        "icon": "book",
        "color": "#4F46E5",
        "created_at": created_at,
    }


@pytest.fixture
def remote():
    return InMemoryDocumentStore()


@pytest.fixture
def identity():
    return SessionIdentityProvider(UserProfile(uid=USER_ID, email="user@example.com"))


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def audit_logger():
    return SyncAuditLogger(buffer_size=500)


@pytest.fixture
def store(remote, identity, cache, audit_logger):
    return SyncStore(
        remote=remote,
        identity=identity,
        cache=cache,
        audit_logger=audit_logger,
        settings=SyncSettings(),
        cache_key="test-store",
    )
