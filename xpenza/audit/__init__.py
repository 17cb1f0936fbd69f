"""Sync audit logging package."""

from xpenza.audit.logger import SyncAuditLogger

__all__ = ["SyncAuditLogger"]
