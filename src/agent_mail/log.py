"""structlog and stdlib logging setup."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from .config import Settings, get_settings

_LOGGING_CONFIGURED = False


def configure_logging(settings: Settings | None = None) -> None:
    """Initialize structlog and stdlib logging formatting (idempotent).

    Log output goes to stderr; stdout belongs to whatever prints operation results.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "operation", "outcome"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level, stream=sys.stderr)
    # aiosqlite logs every cursor operation at DEBUG
    logging.getLogger("aiosqlite").setLevel(max(level, logging.INFO))
    _LOGGING_CONFIGURED = True


def reset_logging_state() -> None:
    """Test helper: allow configure_logging to run again with fresh settings."""
    global _LOGGING_CONFIGURED
    _LOGGING_CONFIGURED = False
    structlog.reset_defaults()


def get_logger(name: str) -> Any:
    configure_logging()
    return structlog.get_logger(name)
