"""
Sync Event Models for Xpenza

Every step of the optimistic write protocol is recorded as a sync event.
This provides:
1. A trace of each record from optimistic insert to confirmation
2. The only diagnostic of a failed remote write (failures never reach the UI)
3. A way for tests to assert that a failure was noticed

Events of one record share a correlation key: its client_key.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class SyncEventType(str, Enum):
    """
    Types of events we record.

    Each step of the write protocol has its own event type.
    """
    # Transactions
    TRANSACTION_ADDED = "transaction_added"
    TRANSACTION_CONFIRMED = "transaction_confirmed"
    TRANSACTION_CREATE_FAILED = "transaction_create_failed"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_UPDATE_FAILED = "transaction_update_failed"
    TRANSACTION_DELETED = "transaction_deleted"
    TRANSACTION_DELETE_REVERTED = "transaction_delete_reverted"

    # Ledgers
    LEDGER_ADDED = "ledger_added"
    LEDGER_CONFIRMED = "ledger_confirmed"
    LEDGER_CREATE_FAILED = "ledger_create_failed"
    LEDGER_DELETED = "ledger_deleted"
    LEDGER_DELETE_REVERTED = "ledger_delete_reverted"
    LEDGERS_INITIALIZED = "ledgers_initialized"
    TRANSACTIONS_MIGRATED = "transactions_migrated"

    # Categories
    CATEGORY_ADDED = "category_added"
    CATEGORY_ADD_FAILED = "category_add_failed"

    # Pulls and pushes
    FETCH_FAILED = "fetch_failed"
    SNAPSHOT_APPLIED = "snapshot_applied"
    SUBSCRIPTION_STARTED = "subscription_started"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"

    # Local cache
    CACHE_REHYDRATED = "cache_rehydrated"
    CACHE_WRITE_FAILED = "cache_write_failed"

    # Commands that were not applied
    PRECONDITION_FAILED = "precondition_failed"


class SyncSeverity(str, Enum):
    """Severity level for sync events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class SyncEvent(BaseModel):
    """A single sync event."""

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: SyncEventType
    severity: SyncSeverity = SyncSeverity.INFO

    # Context - what record is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of record (e.g., 'transaction', 'ledger')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Current id of the record (temporary or server-assigned)"
    )
    correlation_id: Optional[str] = Field(
        default=None,
        description="client_key of the record, shared by all its events"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(default_factory=dict)

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": self.correlation_id,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }


class SyncEventBuilder:
    """
    Helper class to build sync events with common patterns.

    Usage:
        event = SyncEventBuilder.record_added("transaction", temp_id)
        event = SyncEventBuilder.remote_write_failed("transaction", key, "create", err)
    """

    @staticmethod
    def record_added(entity_type: str, client_key: str) -> SyncEvent:
        return SyncEvent(
            event_type=_ADDED[entity_type],
            severity=SyncSeverity.DEBUG,
            entity_type=entity_type,
            entity_id=client_key,
            correlation_id=client_key,
            description=f"Optimistic {entity_type} inserted locally",
        )

    @staticmethod
    def record_confirmed(
        entity_type: str,
        client_key: str,
        server_id: str,
        already_pushed: bool = False,
    ) -> SyncEvent:
        return SyncEvent(
            event_type=_CONFIRMED[entity_type],
            entity_type=entity_type,
            entity_id=server_id,
            correlation_id=client_key,
            description=f"Remote store confirmed {entity_type} as {server_id}",
            details={"already_pushed": already_pushed},
        )

    @staticmethod
    def remote_write_failed(
        entity_type: str,
        client_key: str,
        operation: str,
        error: Exception,
        entity_id: Optional[str] = None,
    ) -> SyncEvent:
        event_type = {
            ("transaction", "create"): SyncEventType.TRANSACTION_CREATE_FAILED,
            ("transaction", "update"): SyncEventType.TRANSACTION_UPDATE_FAILED,
            ("ledger", "create"): SyncEventType.LEDGER_CREATE_FAILED,
            ("category", "create"): SyncEventType.CATEGORY_ADD_FAILED,
        }[(entity_type, operation)]
        return SyncEvent(
            event_type=event_type,
            severity=SyncSeverity.ERROR,
            entity_type=entity_type,
            entity_id=entity_id or client_key,
            correlation_id=client_key,
            description=f"Remote {operation} of {entity_type} failed; kept locally as unsynced",
            error_message=str(error),
        )

    @staticmethod
    def delete_reverted(
        entity_type: str,
        client_key: str,
        entity_id: str,
        error: Exception,
    ) -> SyncEvent:
        event_type = (
            SyncEventType.LEDGER_DELETE_REVERTED
            if entity_type == "ledger"
            else SyncEventType.TRANSACTION_DELETE_REVERTED
        )
        return SyncEvent(
            event_type=event_type,
            severity=SyncSeverity.ERROR,
            entity_type=entity_type,
            entity_id=entity_id,
            correlation_id=client_key,
            description=f"Remote delete of {entity_type} failed; local state restored",
            error_message=str(error),
        )

    @staticmethod
    def fetch_failed(collection: str, error: Exception) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.FETCH_FAILED,
            severity=SyncSeverity.ERROR,
            entity_type=collection,
            description=f"Could not read {collection} from the remote store",
            error_message=str(error),
        )

    @staticmethod
    def precondition_failed(command: str, reason: str) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.PRECONDITION_FAILED,
            severity=SyncSeverity.DEBUG,
            description=f"{command} skipped: {reason}",
            details={"command": command, "reason": reason},
        )

    @staticmethod
    def snapshot_applied(collection: str, remote_count: int, kept_local: int) -> SyncEvent:
        return SyncEvent(
            event_type=SyncEventType.SNAPSHOT_APPLIED,
            severity=SyncSeverity.DEBUG,
            entity_type=collection,
            description=f"Applied {collection} snapshot with {remote_count} documents",
            details={"remote_count": remote_count, "kept_local": kept_local},
        )


_ADDED = {
    "transaction": SyncEventType.TRANSACTION_ADDED,
    "ledger": SyncEventType.LEDGER_ADDED,
}

_CONFIRMED = {
    "transaction": SyncEventType.TRANSACTION_CONFIRMED,
    "ledger": SyncEventType.LEDGER_CONFIRMED,
}
