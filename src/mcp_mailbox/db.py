"""Async database engine and session management utilities.

This module owns the single durable store shared by every mailbox operation:

Concurrency Architecture:
- WAL mode so readers keep working while one writer holds the lock
- Write transactions start with ``BEGIN IMMEDIATE``; the write lock is taken before
  the first statement runs, so a transaction never reads a snapshot it cannot write on
- Lock waits happen inside SQLite (``busy_timeout``); store operations never retry
- Schema bootstrap is the only code path retried with backoff on lock contention

Key invariants:
- One writer at a time (SQLite constraint), concurrent readers allowed
- Every store operation runs inside exactly one transaction
- Any SQLAlchemy/OS error escaping a store operation surfaces as StorageFailureError
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import random
import re
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import asynccontextmanager, contextmanager, suppress
from dataclasses import dataclass, field
from functools import wraps
from pathlib import Path
from typing import Any, Final, TypeVar

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from . import models as _models  # noqa: F401  (registers tables on SQLModel.metadata)
from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings
from .errors import StorageFailureError

T = TypeVar("T")
_logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None

# Execution option read by the SQLite "begin" hook
BEGIN_MODE_OPTION: Final[str] = "mailbox_begin_mode"

_QUERY_TRACKER: contextvars.ContextVar["QueryTracker | None"] = contextvars.ContextVar("query_tracker", default=None)
_QUERY_HOOKS_INSTALLED = False
_SLOW_QUERY_LIMIT = 50
_SQL_TABLE_RE = re.compile(r"\bfrom\s+([\w\.\"`\[\]]+)", re.IGNORECASE)
_SQL_UPDATE_RE = re.compile(r"\bupdate\s+([\w\.\"`\[\]]+)", re.IGNORECASE)
_SQL_INSERT_RE = re.compile(r"\binsert\s+into\s+([\w\.\"`\[\]]+)", re.IGNORECASE)


@dataclass(slots=True)
class QueryTracker:
    """Per-task query counters collected while a tool call runs."""

    total: int = 0
    total_time_ms: float = 0.0
    per_table: dict[str, int] = field(default_factory=dict)
    slow_query_ms: float | None = None
    slow_queries: list[dict[str, Any]] = field(default_factory=list)

    def record(self, statement: str, duration_ms: float) -> None:
        self.total += 1
        self.total_time_ms += duration_ms
        table = _extract_table_name(statement)
        if table:
            self.per_table[table] = self.per_table.get(table, 0) + 1
        is_slow = self.slow_query_ms is not None and duration_ms >= self.slow_query_ms
        if is_slow and len(self.slow_queries) < _SLOW_QUERY_LIMIT:
            self.slow_queries.append({"table": table, "duration_ms": round(duration_ms, 2)})

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "total_time_ms": round(self.total_time_ms, 2),
            "per_table": dict(sorted(self.per_table.items(), key=lambda item: (-item[1], item[0]))),
            "slow_query_ms": self.slow_query_ms,
            "slow_queries": list(self.slow_queries),
        }


def _extract_table_name(statement: str) -> str | None:
    for pattern in (_SQL_INSERT_RE, _SQL_UPDATE_RE, _SQL_TABLE_RE):
        match = pattern.search(statement)
        if match:
            raw = match.group(1).strip()
            return raw.split(".")[-1].strip("`\"[]")
    return None


def get_query_tracker() -> QueryTracker | None:
    return _QUERY_TRACKER.get()


@contextmanager
def track_queries(*, slow_ms: float | None = None) -> Iterator[QueryTracker]:
    tracker = QueryTracker(slow_query_ms=slow_ms)
    token = _QUERY_TRACKER.set(tracker)
    try:
        yield tracker
    finally:
        _QUERY_TRACKER.reset(token)


def _is_lock_error(error_msg: str) -> bool:
    """Check if error message indicates a database lock error."""
    lower_msg = error_msg.lower()
    return any(
        phrase in lower_msg
        for phrase in (
            "database is locked",
            "database is busy",
            "unable to open database",  # Can happen during checkpoint
        )
    )


def retry_on_db_lock(
    max_retries: int = 7,
    base_delay: float = 0.05,
    max_delay: float = 8.0,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Retry an async function on SQLite lock errors with exponential backoff + jitter.

    Only used for schema bootstrap. Store operations rely on ``busy_timeout`` and
    surface failures directly.

    Backoff schedule: ``base_delay * 2**attempt`` capped at ``max_delay``, with
    +/-25% jitter so concurrent starters do not retry in lockstep.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            func_name = getattr(func, "__name__", "<callable>")
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except OperationalError as e:
                    error_msg = str(e)
                    if not _is_lock_error(error_msg) or attempt >= max_retries:
                        raise
                    delay = min(base_delay * (2**attempt), max_delay)
                    jitter = delay * 0.25 * (2 * random.random() - 1)
                    total_delay = max(0.01, delay + jitter)
                    _logger.warning(
                        "db.db_locked",
                        extra={
                            "function": func_name,
                            "attempt": attempt + 1,
                            "max_retries": max_retries,
                            "delay_seconds": round(total_delay, 3),
                            "error": error_msg[:200],
                        },
                    )
                    attempt += 1
                    await asyncio.sleep(total_delay)

        return wrapper

    return decorator


def storage_operation(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Translate storage-layer exceptions into :class:`StorageFailureError`.

    The wrapped coroutine runs its own transaction; when it raises, the
    transaction has already been rolled back by the session context.
    """

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except (SQLAlchemyError, OSError) as exc:
            raise StorageFailureError(f"{func.__name__} failed: {exc}") from exc

    return wrapper


def _is_sqlite_url(url: str) -> bool:
    return "sqlite" in url.lower()


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build async SQLAlchemy engine with SQLite settings for concurrent agents.

    SQLite Concurrency Tuning:
    - WAL mode: concurrent readers + one writer
    - NORMAL sync: WAL provides crash safety without FULL's fsync cost
    - busy_timeout=60s: writers wait for the lock instead of failing
    - pysqlite's implicit BEGIN is disabled; the "begin" hook emits BEGIN itself so
      write transactions can ask for IMMEDIATE via :data:`BEGIN_MODE_OPTION`
    """
    connect_args: dict[str, Any] = {}
    is_sqlite = _is_sqlite_url(settings.url)

    if is_sqlite:
        # SQLite returns "unable to open database file" when the directory is missing.
        parsed = make_url(settings.url)
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)

        connect_args = {
            "timeout": 60.0,
            "check_same_thread": False,  # Required for async SQLite
        }

    pool_size = settings.pool_size if settings.pool_size is not None else (50 if is_sqlite else 25)
    max_overflow = settings.max_overflow if settings.max_overflow is not None else (4 if is_sqlite else 25)
    pool_timeout = settings.pool_timeout if settings.pool_timeout is not None else (45 if is_sqlite else 30)

    engine = create_async_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=1800,
        pool_reset_on_return="rollback",
        connect_args=connect_args,
    )

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            """Configure each new connection.

            - isolation_level=None: stop the driver from emitting its own BEGIN
            - journal_mode=WAL: concurrent reads during writes
            - synchronous=NORMAL: durable with WAL, faster than FULL
            - busy_timeout=60000: block up to 60s for a conflicting writer
            """
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=60000")
                cursor.execute("PRAGMA wal_autocheckpoint=1000")
                cursor.execute("PRAGMA temp_store=MEMORY")
            finally:
                cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def begin_transaction(conn: Any) -> None:
            mode = conn.get_execution_options().get(BEGIN_MODE_OPTION, "DEFERRED")
            conn.exec_driver_sql(f"BEGIN {mode}")

        @event.listens_for(engine.sync_engine, "checkin")
        def on_checkin(dbapi_conn: Any, connection_record: Any) -> None:
            """Passive WAL checkpoint when a connection returns to the pool."""
            try:
                cursor = dbapi_conn.cursor()
                try:
                    cursor.execute("PRAGMA wal_checkpoint(PASSIVE)")
                finally:
                    cursor.close()
            except Exception:
                # Checkpoint failures are non-critical; the next checkin tries again.
                _logger.debug("db.checkpoint_skipped", exc_info=True)

    return engine


def install_query_hooks(engine: AsyncEngine) -> None:
    """Install lightweight query counting hooks on the engine (idempotent)."""
    global _QUERY_HOOKS_INSTALLED
    if _QUERY_HOOKS_INSTALLED:
        return

    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def before_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        if _QUERY_TRACKER.get() is None:
            return
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine.sync_engine, "after_cursor_execute")
    def after_cursor_execute(
        conn: Any,
        cursor: Any,
        statement: str,
        parameters: Any,
        context: Any,
        executemany: bool,
    ) -> None:
        tracker = _QUERY_TRACKER.get()
        if tracker is None:
            return
        timings = conn.info.get("query_start_time")
        if not timings:
            return
        duration_ms = (time.perf_counter() - timings.pop()) * 1000.0
        tracker.record(statement, duration_ms)

    _QUERY_HOOKS_INSTALLED = True


def init_engine(settings: Settings | None = None) -> None:
    """Initialise global engine and session factory once."""
    global _engine, _session_factory, _QUERY_HOOKS_INSTALLED
    if _engine is not None and _session_factory is not None:
        return
    resolved_settings = settings or get_settings()
    engine = _build_engine(resolved_settings.database)
    # Hooks are per engine; a fresh engine needs them again.
    _QUERY_HOOKS_INSTALLED = False
    install_query_hooks(engine)
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
    """Provide an async database session with guaranteed cleanup.

    The close is shielded so task cancellation cannot leave a connection
    checked out with an open transaction.
    """
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
async def write_session() -> AsyncIterator[AsyncSession]:
    """Session whose transaction holds the database write lock from its first statement.

    Callers must ``await session.commit()``; leaving the block without committing
    rolls everything back.
    """
    async with get_session() as session:
        await session.connection(execution_options={BEGIN_MODE_OPTION: "IMMEDIATE"})
        yield session


def get_db_health_status() -> dict[str, Any]:
    """Return pool statistics for the current engine (empty when not initialised)."""
    status: dict[str, Any] = {"initialized": _engine is not None, "schema_ready": _schema_ready}
    if _engine is not None:
        pool = _engine.pool
        # Pool attributes are available at runtime but not in type stubs
        status["pool"] = {
            "size": pool.size(),  # type: ignore[attr-defined]
            "checked_in": pool.checkedin(),  # type: ignore[attr-defined]
            "checked_out": pool.checkedout(),  # type: ignore[attr-defined]
            "overflow": pool.overflow(),  # type: ignore[attr-defined]
        }
    return status


@retry_on_db_lock(max_retries=7, base_delay=0.1, max_delay=8.0)
async def ensure_schema(settings: Settings | None = None) -> None:
    """Ensure database schema exists (creates tables from SQLModel definitions).

    Safe to call repeatedly and from concurrent tasks; only the first caller
    does any work.
    """
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
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        _schema_ready = True


async def ping_database() -> None:
    """Run a trivial query; raises if the store cannot be reached."""
    await ensure_schema()
    async with get_session() as session:
        await session.execute(text("SELECT 1"))


def reset_database_state() -> None:
    """Test helper to reset global engine/session state."""
    global _engine, _session_factory, _schema_ready, _schema_lock, _QUERY_HOOKS_INSTALLED
    # Dispose any existing engine/pool first to avoid leaking file descriptors across tests.
    if _engine is not None:
        engine = _engine
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None

            if running is not None and running.is_running():
                # Can't block; fall back to sync pool disposal (best effort).
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
    _QUERY_HOOKS_INSTALLED = False
    # Tests frequently mutate env vars; keep settings cache in sync with DB resets.
    clear_settings_cache()


def get_database_path(settings: Settings | None = None) -> Path | None:
    """Extract the filesystem path to the SQLite database file from settings.

    Returns None when the URL is not SQLite or points at an in-memory database.
    """
    resolved = settings or get_settings()
    try:
        parsed = make_url(resolved.database.url)
    except Exception:
        return None

    if parsed.get_backend_name() != "sqlite":
        return None

    db_path = parsed.database
    if not db_path or db_path == ":memory:":
        return None

    return Path(db_path)
