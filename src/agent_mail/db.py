"""Async database engine, session and transaction management.

Concurrency model:
- One store file shared by many short-lived invocations on the same machine.
- WAL journaling: concurrent readers, one writer at a time.
- Every write runs inside ``write_transaction()``, which opens with
  ``BEGIN IMMEDIATE`` so the write lock is taken before the first read and a
  check-then-insert sequence cannot interleave with another writer.
- ``busy_timeout`` bounds each lock wait; ``retry_on_db_lock`` retries a whole
  transaction with exponential backoff plus jitter and then raises
  ``StoreBusyError``. Nothing else is retried.
- Reads run outside explicit transactions (driver autocommit).
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager, suppress
from functools import wraps
from pathlib import Path
from typing import Any, Optional, TypeVar

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from . import models as _models  # noqa: F401  registers table metadata
from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings
from .errors import StoreBusyError

T = TypeVar("T")
_logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None

_LOCK_PHRASES = ("database is locked", "database is busy", "locked")


def _is_lock_error(error_msg: str) -> bool:
    """Check if error message indicates a database lock error."""
    lower_msg = error_msg.lower()
    return any(phrase in lower_msg for phrase in _LOCK_PHRASES)


def retry_on_db_lock(
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: float = 2.0,
) -> Callable[..., Any]:
    """Retry an async transactional function on SQLite lock errors.

    The wrapped function must open and commit its own transaction so a retry
    replays the whole unit of work. Delays grow as ``base_delay * 2**attempt``
    (capped at ``max_delay``) with +/-25% jitter. Once the budget is spent the
    lock error is surfaced as ``StoreBusyError``; any other error propagates
    untouched. Defaults come from ``DATABASE_LOCK_RETRIES`` and
    ``DATABASE_LOCK_BASE_DELAY_SECONDS``.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            db_settings = get_settings().database
            retries = db_settings.lock_retries if max_retries is None else max_retries
            delay_base = db_settings.lock_base_delay_seconds if base_delay is None else base_delay
            func_name = getattr(func, "__name__", "<callable>")

            for attempt in range(retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (OperationalError, SATimeoutError) as exc:
                    error_msg = str(exc)
                    if not (_is_lock_error(error_msg) or isinstance(exc, SATimeoutError)):
                        raise
                    if attempt >= retries:
                        _logger.error(
                            "db.store_busy",
                            extra={"function": func_name, "attempts": attempt + 1, "error": error_msg[:200]},
                        )
                        raise StoreBusyError(
                            f"Store stayed locked after {attempt + 1} attempts in {func_name}; retry later.",
                            data={"function": func_name, "attempts": attempt + 1},
                        ) from exc

                    delay = min(delay_base * (2**attempt), max_delay)
                    jitter = delay * 0.25 * (2 * random.random() - 1)
                    total_delay = max(0.001, delay + jitter)
                    _logger.warning(
                        "db.db_locked",
                        extra={
                            "function": func_name,
                            "attempt": attempt + 1,
                            "max_retries": retries,
                            "delay_seconds": round(total_delay, 3),
                            "error": error_msg[:200],
                        },
                    )
                    await asyncio.sleep(total_delay)
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build the async engine; SQLite connections get WAL and a bounded busy timeout."""
    connect_args: dict[str, Any] = {}
    is_sqlite = settings.url.lower().startswith("sqlite")

    if is_sqlite:
        # SQLite reports "unable to open database file" when the directory is missing.
        with suppress(ArgumentError, OSError):
            parsed = make_url(settings.url)
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        connect_args = {
            "timeout": settings.busy_timeout_seconds,
            "check_same_thread": False,
        }

    engine = create_async_engine(
        settings.url,
        echo=settings.echo,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )

    if is_sqlite:
        busy_timeout_ms = int(settings.busy_timeout_seconds * 1000)

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            # Transactions are opened explicitly (BEGIN IMMEDIATE for writes);
            # stop the driver from emitting its own deferred BEGIN.
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
                cursor.execute("PRAGMA temp_store=MEMORY")
            finally:
                cursor.close()

        @event.listens_for(engine.sync_engine, "checkin")
        def on_checkin(dbapi_conn: Any, connection_record: Any) -> None:
            # PASSIVE never blocks writers; failures only delay WAL truncation.
            with suppress(Exception):
                cursor = dbapi_conn.cursor()
                try:
                    cursor.execute("PRAGMA wal_checkpoint(PASSIVE)")
                finally:
                    cursor.close()

    return engine


def init_engine(settings: Settings | None = None) -> None:
    """Initialise global engine and session factory once."""
    global _engine, _session_factory
    if _engine is not None and _session_factory is not None:
        return
    resolved_settings = settings or get_settings()
    engine = _build_engine(resolved_settings.database)
    _engine = engine
    _session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide an async session that is closed even under task cancellation."""
    factory = get_session_factory()
    session = factory()
    try:
        yield session
    finally:
        close_task = asyncio.create_task(session.close())
        try:
            await asyncio.shield(close_task)
        except BaseException:
            with suppress(BaseException):
                await close_task
            raise


@asynccontextmanager
async def write_transaction() -> AsyncIterator[AsyncSession]:
    """Run one atomic write: take the write lock up front, commit on exit, roll back on error."""
    await ensure_schema()
    async with get_session() as session:
        if get_engine().dialect.name == "sqlite":
            await session.execute(text("BEGIN IMMEDIATE"))
        try:
            yield session
            await session.commit()
        except BaseException:
            with suppress(Exception):
                await session.rollback()
            raise


@retry_on_db_lock(max_delay=4.0)
async def ensure_schema(settings: Settings | None = None) -> None:
    """Create tables from the SQLModel metadata plus the FTS index and triggers."""
    global _schema_ready, _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        init_engine(settings)
        engine = get_engine()
        is_sqlite = engine.dialect.name == "sqlite"
        async with engine.connect() as conn:
            if is_sqlite:
                # Existence checks and CREATE TABLE must run under the write lock:
                # several processes may open a fresh store file at once.
                await conn.exec_driver_sql("BEGIN IMMEDIATE")
            await conn.run_sync(SQLModel.metadata.create_all)
            if is_sqlite:
                await conn.run_sync(_setup_fts)
            await conn.commit()
        _schema_ready = True


def reset_database_state() -> None:
    """Test helper to reset global engine/session state."""
    global _engine, _session_factory, _schema_ready, _schema_lock
    if _engine is not None:
        engine = _engine
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        try:
            if running is not None:
                # Can't block inside a running loop; drop pooled connections synchronously.
                engine.sync_engine.dispose()
            else:
                asyncio.run(engine.dispose())
        except Exception:
            with suppress(Exception):
                engine.sync_engine.dispose()
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None
    clear_settings_cache()


def _setup_fts(connection: Any) -> None:
    connection.exec_driver_sql(
        "CREATE VIRTUAL TABLE IF NOT EXISTS fts_messages USING fts5(message_id UNINDEXED, subject, body)"
    )
    connection.exec_driver_sql(
        """
        CREATE TRIGGER IF NOT EXISTS fts_messages_ai
        AFTER INSERT ON messages
        BEGIN
            INSERT INTO fts_messages(rowid, message_id, subject, body)
            VALUES (new.id, new.id, new.subject, new.body_md);
        END;
        """
    )
    connection.exec_driver_sql(
        """
        CREATE TRIGGER IF NOT EXISTS fts_messages_ad
        AFTER DELETE ON messages
        BEGIN
            DELETE FROM fts_messages WHERE rowid = old.id;
        END;
        """
    )
    connection.exec_driver_sql(
        """
        CREATE TRIGGER IF NOT EXISTS fts_messages_au
        AFTER UPDATE ON messages
        BEGIN
            DELETE FROM fts_messages WHERE rowid = old.id;
            INSERT INTO fts_messages(rowid, message_id, subject, body)
            VALUES (new.id, new.id, new.subject, new.body_md);
        END;
        """
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_messages_sender_created ON messages(sender_id, created_ts DESC)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_message_recipients_agent_ack "
        "ON message_recipients(agent_id, ack_ts)"
    )


def get_database_path(settings: Settings | None = None) -> Path | None:
    """Return the SQLite file backing the store, or None for non-file databases."""
    resolved = settings or get_settings()
    try:
        parsed = make_url(resolved.database.url)
    except ArgumentError:
        return None
    if parsed.get_backend_name() != "sqlite":
        return None
    db_path = parsed.database
    if not db_path or db_path == ":memory:":
        return None
    return Path(db_path)
