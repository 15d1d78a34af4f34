"""Error taxonomy shared by every engine operation.

Every error carries a stable ``error_type`` code, a human message, a
``recoverable`` flag and a JSON-ready ``data`` mapping so the service layer can
hand callers a structured payload instead of a traceback.
"""

from __future__ import annotations

from typing import Any, Optional


class AgentMailError(Exception):
    error_type = "AGENT_MAIL_ERROR"
    recoverable = True

    def __init__(
        self,
        message: str,
        *,
        error_type: Optional[str] = None,
        recoverable: Optional[bool] = None,
        data: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        if error_type is not None:
            self.error_type = error_type
        if recoverable is not None:
            self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


class ValidationError(AgentMailError):
    """Malformed input; raised before any transaction begins."""

    error_type = "INVALID_ARGUMENT"


class PathEscapeError(ValidationError):
    """Pattern is absolute or climbs out of the project root."""

    error_type = "PATH_ESCAPE"


class ConflictError(AgentMailError):
    """Request is well formed but cannot be satisfied against current state."""

    error_type = "CONFLICT"


class FileReservationConflict(ConflictError):
    error_type = "FILE_RESERVATION_CONFLICT"

    def __init__(self, pattern: str, holders: list[dict[str, Any]]):
        blocking = holders[0]
        message = (
            f"'{pattern}' overlaps {blocking['path_pattern']!r} held by {blocking['agent']} "
            f"until {blocking['expires_ts']}"
        )
        if blocking.get("reason"):
            message += f" ({blocking['reason']})"
        super().__init__(message, data={"pattern": pattern, "holders": holders})
        self.pattern = pattern
        self.holders = holders

    @property
    def holder(self) -> dict[str, Any]:
        return self.holders[0]


class EmptyRecipientSet(ConflictError):
    error_type = "EMPTY_RECIPIENT_SET"


class NotFoundError(AgentMailError):
    error_type = "NOT_FOUND"


class NotRegisteredError(NotFoundError):
    error_type = "NOT_REGISTERED"


class NotARecipientError(NotFoundError):
    error_type = "NOT_A_RECIPIENT"


class StoreBusyError(AgentMailError):
    """The store stayed locked past the bounded retry budget."""

    error_type = "STORE_BUSY"
