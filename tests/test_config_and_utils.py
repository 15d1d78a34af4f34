from __future__ import annotations

import random
from dataclasses import fields
from datetime import datetime, timedelta, timezone

import pytest

from agent_mail.config import _expand_sqlite_url, clear_settings_cache, get_settings
from agent_mail.errors import FileReservationConflict, NotFoundError
from agent_mail.utils import (
    ADJECTIVES,
    NOUNS,
    generate_agent_name,
    iso,
    naive_utc,
    project_slug,
    sanitize_agent_name,
    slugify,
    validate_agent_name_format,
    validate_thread_id_format,
)

_ENV_KEYS = (
    "DATABASE_URL",
    "DATABASE_BUSY_TIMEOUT_SECONDS",
    "DATABASE_LOCK_RETRIES",
    "DATABASE_LOCK_BASE_DELAY_SECONDS",
    "FILE_RESERVATION_DEFAULT_TTL_SECONDS",
    "FILE_RESERVATION_MAX_TTL_SECONDS",
    "MESSAGING_ACTIVE_WINDOW_MINUTES",
    "SEARCH_DEFAULT_LIMIT",
    "PROJECT_KEY",
    "AGENT_MAIL_AGENT",
    "AGENT_NAME_MAX_ATTEMPTS",
    "LOG_LEVEL",
    "LOG_JSON_ENABLED",
    "LOG_RICH_ENABLED",
)


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield tmp_path
    clear_settings_cache()


def test_defaults(clean_env):
    settings = get_settings()
    assert "environment" not in {field.name for field in fields(settings)}
    assert settings.database.url == f"sqlite+aiosqlite:///{clean_env}/.agent-mail.db"
    assert settings.database.busy_timeout_seconds == 5.0
    assert settings.database.lock_retries == 5
    assert settings.reservations.default_ttl_seconds == 3600
    assert settings.reservations.max_ttl_seconds == 604800
    assert settings.messaging.active_window_minutes == 60
    assert settings.messaging.search_default_limit == 20
    assert settings.project_key == str(clean_env)
    assert settings.agent_name_hint == ""
    assert settings.log_rich_enabled is False


def test_environment_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("FILE_RESERVATION_DEFAULT_TTL_SECONDS", "900")
    monkeypatch.setenv("FILE_RESERVATION_MAX_TTL_SECONDS", "600")
    monkeypatch.setenv("MESSAGING_ACTIVE_WINDOW_MINUTES", "15")
    monkeypatch.setenv("AGENT_MAIL_AGENT", " BlueLake ")
    monkeypatch.setenv("LOG_RICH_ENABLED", "yes")
    monkeypatch.setenv("PROJECT_KEY", "/work/app")
    settings = get_settings()
    assert settings.reservations.default_ttl_seconds == 600
    assert settings.reservations.max_ttl_seconds == 600
    assert settings.messaging.active_window_minutes == 15
    assert settings.agent_name_hint == "BlueLake"
    assert settings.log_rich_enabled is True
    assert settings.project_key == "/work/app"


def test_invalid_values_fall_back(clean_env, monkeypatch):
    monkeypatch.setenv("SEARCH_DEFAULT_LIMIT", "lots")
    monkeypatch.setenv("MESSAGING_ACTIVE_WINDOW_MINUTES", "0")
    monkeypatch.setenv("DATABASE_LOCK_RETRIES", "-2")
    monkeypatch.setenv("DATABASE_BUSY_TIMEOUT_SECONDS", "soon")
    monkeypatch.setenv("LOG_JSON_ENABLED", "maybe")
    settings = get_settings()
    assert settings.messaging.search_default_limit == 20
    assert settings.messaging.active_window_minutes == 60
    assert settings.database.lock_retries == 0
    assert settings.database.busy_timeout_seconds == 5.0
    assert settings.log_json_enabled is False


def test_settings_are_cached_until_cleared(clean_env, monkeypatch):
    first = get_settings()
    monkeypatch.setenv("SEARCH_DEFAULT_LIMIT", "5")
    assert get_settings() is first
    clear_settings_cache()
    assert get_settings().messaging.search_default_limit == 5


def test_expand_sqlite_url(clean_env):
    assert _expand_sqlite_url("sqlite+aiosqlite:///~/mail.db") == f"sqlite+aiosqlite:///{clean_env}/mail.db"
    assert _expand_sqlite_url("sqlite+aiosqlite:////var/mail.db") == "sqlite+aiosqlite:////var/mail.db"
    assert _expand_sqlite_url("postgresql://~user@host/db") == "postgresql://~user@host/db"


def test_slugs():
    assert slugify("  My Project!! ") == "my-project"
    assert slugify("***") == "project"
    left, right = project_slug("/home/a/app"), project_slug("/home/b/app")
    assert left != right
    assert left.startswith("app-") and len(left) == len("app-") + 10
    assert project_slug("/home/a/app") == left


def test_agent_names():
    rng = random.Random(7)
    name = generate_agent_name(rng)
    assert name == generate_agent_name(random.Random(7))
    assert any(name == f"{adjective}{noun}" for adjective in ADJECTIVES for noun in NOUNS)
    assert validate_agent_name_format(name)
    assert sanitize_agent_name(" Blue-Lake ") == "BlueLake"
    assert sanitize_agent_name("!!!") is None
    assert not validate_agent_name_format("9Lives")
    assert not validate_agent_name_format("")
    assert validate_agent_name_format("A" * 64)
    assert not validate_agent_name_format("A" * 65)


def test_thread_ids():
    assert validate_thread_id_format("TASK-1.2_a")
    assert not validate_thread_id_format("-leading")
    assert not validate_thread_id_format("with space")
    assert not validate_thread_id_format("a" * 129)


def test_timestamps():
    aware = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert naive_utc(aware) == datetime(2026, 1, 1, 10, 0)
    assert naive_utc().tzinfo is None
    assert iso(None) is None
    assert iso(datetime(2026, 1, 1)) == "2026-01-01T00:00:00+00:00"
    assert iso("2026-01-01T05:30:00") == "2026-01-01T05:30:00+00:00"


def test_error_payloads():
    error = NotFoundError("Message 3 not found.", data={"message_id": 3})
    assert error.to_payload() == {
        "error": {
            "type": "NOT_FOUND",
            "message": "Message 3 not found.",
            "recoverable": True,
            "data": {"message_id": 3},
        }
    }
    holder = {
        "agent": "Ann",
        "path_pattern": "src/**",
        "reason": "refactor",
        "expires_ts": "2026-01-01T00:00:00+00:00",
    }
    conflict = FileReservationConflict("src/app.py", [holder])
    assert "Ann" in str(conflict) and "refactor" in str(conflict)
    assert conflict.to_payload()["error"]["data"]["holders"] == [holder]
