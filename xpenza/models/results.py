"""
Command Results

Every store command reports what it did. A caller (or a test) can tell
"did nothing because the session was not ready" apart from "applied".

Remote confirmation is asynchronous, so a command that returned OK has only
applied its optimistic local change. REMOTE_FAILED is reserved for the
operations that await the remote store before returning (pulls, bootstrap,
custom categories).
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class CommandStatus(str, Enum):
    OK = "ok"
    PRECONDITION_FAILED = "precondition_failed"
    REMOTE_FAILED = "remote_failed"


class PreconditionReason(str, Enum):
    """Why a command was not applied."""
    NO_SESSION = "no_session"
    NO_ACTIVE_LEDGER = "no_active_ledger"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate"


class CommandResult(BaseModel):
    """Outcome of a store command."""
    model_config = ConfigDict(frozen=True)

    status: CommandStatus
    record_id: Optional[str] = None
    reason: Optional[PreconditionReason] = None
    error_message: Optional[str] = None

    # Live subscription handle, for the subscribe_* commands
    subscription: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return self.status == CommandStatus.OK

    @classmethod
    def success(
        cls,
        record_id: Optional[str] = None,
        subscription: Optional[Any] = None,
    ) -> "CommandResult":
        return cls(
            status=CommandStatus.OK,
            record_id=record_id,
            subscription=subscription,
        )

    @classmethod
    def precondition_failed(
        cls,
        reason: PreconditionReason,
        record_id: Optional[str] = None,
    ) -> "CommandResult":
        return cls(
            status=CommandStatus.PRECONDITION_FAILED,
            reason=reason,
            record_id=record_id,
        )

    @classmethod
    def remote_failed(cls, error_message: str) -> "CommandResult":
        return cls(status=CommandStatus.REMOTE_FAILED, error_message=error_message)
