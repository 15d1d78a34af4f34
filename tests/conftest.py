import contextlib
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import update

from agent_mail.config import clear_settings_cache
from agent_mail.db import get_session, reset_database_state
from agent_mail.log import reset_logging_state
from agent_mail.models import Agent
from agent_mail.utils import naive_utc


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide an isolated database and project directory, resetting caches around the test.

    Yields the project root that PROJECT_KEY points at.
    """
    db_path: Path = tmp_path / "test.sqlite3"
    project_root = tmp_path / "workspace"
    project_root.mkdir()
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("PROJECT_KEY", str(project_root))
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    monkeypatch.delenv("AGENT_MAIL_AGENT", raising=False)
    clear_settings_cache()
    reset_database_state()
    try:
        yield project_root
    finally:
        reset_database_state()
        clear_settings_cache()
        if db_path.exists():
            db_path.unlink()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine state and cached settings even for tests without isolated_env."""
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()
    with contextlib.suppress(Exception):
        reset_logging_state()


@pytest.fixture
def set_last_active():
    """Backdate an agent's activity stamp: ``await set_last_active("Bob", minutes_ago=30)``."""

    async def _set(name: str, minutes_ago: float) -> None:
        async with get_session() as session:
            await session.execute(
                update(Agent)
                .where(Agent.name == name)  # type: ignore[arg-type]
                .values(last_active_ts=naive_utc() - timedelta(minutes=minutes_ago))
            )
            await session.commit()

    return _set


@pytest.fixture
def backdate():
    """Move a timestamp column of one row into the past."""

    async def _backdate(model: Any, column: str, row_id: int, seconds_ago: float) -> None:
        async with get_session() as session:
            await session.execute(
                update(model)
                .where(model.id == row_id)
                .values({column: naive_utc() - timedelta(seconds=seconds_ago)})
            )
            await session.commit()

    return _backdate
