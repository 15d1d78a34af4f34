"""Top-level package for the Agent Mail coordination engine."""

from __future__ import annotations

from .errors import (
    AgentMailError,
    ConflictError,
    EmptyRecipientSet,
    FileReservationConflict,
    NotARecipientError,
    NotFoundError,
    NotRegisteredError,
    PathEscapeError,
    StoreBusyError,
    ValidationError,
)

__all__ = [
    "AgentMailError",
    "ConflictError",
    "EmptyRecipientSet",
    "FileReservationConflict",
    "NotARecipientError",
    "NotFoundError",
    "NotRegisteredError",
    "PathEscapeError",
    "StoreBusyError",
    "ValidationError",
]
