"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")
_DEFAULT_DATABASE_URL: Final[str] = "sqlite+aiosqlite:///~/.agent-mail.db"


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI/tests) falls back to os.environ only.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool
    busy_timeout_seconds: float
    lock_retries: int
    lock_base_delay_seconds: float


@dataclass(slots=True, frozen=True)
class ReservationSettings:
    """Defaults and bounds for file reservations."""

    default_ttl_seconds: int
    max_ttl_seconds: int


@dataclass(slots=True, frozen=True)
class MessagingSettings:
    """Mailbox and addressing defaults."""

    active_window_minutes: int
    search_default_limit: int


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    # Project identity: absolute path of the working tree the caller operates on
    project_key: str
    # Session hint used by whoami when no explicit name is passed
    agent_name_hint: str
    agent_name_max_attempts: int
    database: DatabaseSettings
    reservations: ReservationSettings
    messaging: MessagingSettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _positive(value: int, *, default: int) -> int:
    return value if value > 0 else default


def _expand_sqlite_url(url: str) -> str:
    """Expand ``~`` in file-backed SQLite URLs so the default lands in the home directory."""
    prefix, sep, path = url.partition(":///")
    if not sep or not prefix.startswith("sqlite") or not path.startswith("~"):
        return url
    return f"{prefix}{sep}{Path(path).expanduser()}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    database_settings = DatabaseSettings(
        url=_expand_sqlite_url(_decouple_config("DATABASE_URL", default=_DEFAULT_DATABASE_URL)),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
        busy_timeout_seconds=max(
            0.0, _float(_decouple_config("DATABASE_BUSY_TIMEOUT_SECONDS", default="5"), default=5.0)
        ),
        lock_retries=max(0, _int(_decouple_config("DATABASE_LOCK_RETRIES", default="5"), default=5)),
        lock_base_delay_seconds=max(
            0.001, _float(_decouple_config("DATABASE_LOCK_BASE_DELAY_SECONDS", default="0.05"), default=0.05)
        ),
    )

    default_ttl = _positive(
        _int(_decouple_config("FILE_RESERVATION_DEFAULT_TTL_SECONDS", default="3600"), default=3600),
        default=3600,
    )
    max_ttl = _positive(
        _int(_decouple_config("FILE_RESERVATION_MAX_TTL_SECONDS", default="604800"), default=604800),
        default=604800,
    )
    reservation_settings = ReservationSettings(
        default_ttl_seconds=min(default_ttl, max_ttl),
        max_ttl_seconds=max_ttl,
    )

    messaging_settings = MessagingSettings(
        active_window_minutes=_positive(
            _int(_decouple_config("MESSAGING_ACTIVE_WINDOW_MINUTES", default="60"), default=60),
            default=60,
        ),
        search_default_limit=_positive(
            _int(_decouple_config("SEARCH_DEFAULT_LIMIT", default="20"), default=20),
            default=20,
        ),
    )

    project_key = _decouple_config("PROJECT_KEY", default="").strip() or os.getcwd()

    return Settings(
        project_key=project_key,
        agent_name_hint=_decouple_config("AGENT_MAIL_AGENT", default="").strip(),
        agent_name_max_attempts=_positive(
            _int(_decouple_config("AGENT_NAME_MAX_ATTEMPTS", default="64"), default=64),
            default=64,
        ),
        database=database_settings,
        reservations=reservation_settings,
        messaging=messaging_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
