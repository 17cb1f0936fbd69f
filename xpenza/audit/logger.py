"""
Sync Audit Logger

Every step of the optimistic write protocol is logged. Remote failures are
never raised to the UI, so this log is where they become visible.

The audit logger:
- Writes structured JSON lines through structlog
- Keeps a bounded buffer of recent events for inspection (and tests)
- Never raises: a broken log sink must not break a sync task
"""

from collections import deque
from typing import Optional

import structlog

from xpenza.models.audit import (
    SyncEvent,
    SyncEventBuilder,
    SyncEventType,
    SyncSeverity,
)


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class SyncAuditLogger:
    """
    Central sync event log.

    Logs events both to:
    1. Structured local log (JSON lines)
    2. An in-memory ring of the most recent events
    """

    def __init__(self, buffer_size: int = 200):
        """
        Initialize audit logger.

        Args:
            buffer_size: How many recent events to keep in memory.
                         0 disables the buffer.
        """
        self._recent: deque[SyncEvent] = deque(maxlen=buffer_size)
        self._logger = structlog.get_logger("xpenza.sync")

    def log(self, event: SyncEvent) -> None:
        """Log a sync event at the level matching its severity."""
        self._recent.append(event)

        log_dict = event.to_log_dict()
        try:
            if event.severity == SyncSeverity.ERROR:
                self._logger.error("sync_event", **log_dict)
            elif event.severity == SyncSeverity.WARNING:
                self._logger.warning("sync_event", **log_dict)
            elif event.severity == SyncSeverity.DEBUG:
                self._logger.debug("sync_event", **log_dict)
            else:
                self._logger.info("sync_event", **log_dict)
        except Exception as e:
            # Logging must not break the sync task that emitted the event
            self._logger.error("sync_log_failed", error=str(e), event_id=str(event.event_id))

    def recent_events(
        self,
        event_type: Optional[SyncEventType] = None,
        limit: Optional[int] = None,
    ) -> list[SyncEvent]:
        """Most recent buffered events, oldest first."""
        events = [
            e for e in self._recent
            if event_type is None or e.event_type == event_type
        ]
        if limit is not None:
            events = events[-limit:]
        return events

    def log_precondition_failed(self, command: str, reason: str) -> None:
        self.log(SyncEventBuilder.precondition_failed(command, reason))

    def log_remote_write_failed(
        self,
        entity_type: str,
        client_key: str,
        operation: str,
        error: Exception,
        entity_id: Optional[str] = None,
    ) -> None:
        """Log a failed create/update that left the record unsynced."""
        self.log(SyncEventBuilder.remote_write_failed(
            entity_type=entity_type,
            client_key=client_key,
            operation=operation,
            error=error,
            entity_id=entity_id,
        ))

    def log_delete_reverted(
        self,
        entity_type: str,
        client_key: str,
        entity_id: str,
        error: Exception,
    ) -> None:
        self.log(SyncEventBuilder.delete_reverted(
            entity_type=entity_type,
            client_key=client_key,
            entity_id=entity_id,
            error=error,
        ))

    def log_fetch_failed(self, collection: str, error: Exception) -> None:
        self.log(SyncEventBuilder.fetch_failed(collection, error))
