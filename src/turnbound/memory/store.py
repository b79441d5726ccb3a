from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_incrementing

T = TypeVar("T")

SQLITE_BUSY_MAX_ATTEMPTS = 10
SQLITE_BUSY_BACKOFF_STEP_SECONDS = 0.05
SQLITE_BUSY_MAX_BACKOFF_SECONDS = 1.0

_PRAGMAS = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA busy_timeout = 5000",
)


def is_sqlite_busy(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    if getattr(exc, "sqlite_errorname", "") in ("SQLITE_BUSY", "SQLITE_LOCKED"):
        return True
    text = str(exc)
    return "database is locked" in text or "SQLITE_BUSY" in text


def _log_busy_retry(retry_state: RetryCallState) -> None:
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(f"SQLite busy ({exc}). Retrying in {wait * 1000:.0f}ms (attempt {retry_state.attempt_number})")


@dataclass(frozen=True)
class BusyRetryPolicy:
    """Retries an operation that failed because another writer holds the lock.

    ``max_attempts`` counts every try, including the first. The wait before
    retry ``n`` is ``step * n`` seconds, capped at ``max_backoff``. Once the
    attempts are exhausted the original ``sqlite3.OperationalError`` is raised.
    """

    max_attempts: int = SQLITE_BUSY_MAX_ATTEMPTS
    step: float = SQLITE_BUSY_BACKOFF_STEP_SECONDS
    max_backoff: float = SQLITE_BUSY_MAX_BACKOFF_SECONDS
    sleep: Callable[[float], None] = time.sleep

    def retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception(is_sqlite_busy),
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_incrementing(start=self.step, increment=self.step, max=self.max_backoff),
            sleep=self.sleep,
            before_sleep=_log_busy_retry,
            reraise=True,
        )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return self.retrying()(fn, *args, **kwargs)


class MemoryStore:
    """A single SQLite connection shared by the session store, cache and delta tracker.

    Statement execution is serialized with one coarse lock per connection;
    cross-process contention is left to SQLite's own locking plus
    :class:`BusyRetryPolicy`.
    """

    def __init__(self, db_path: str, *, busy_retry: BusyRetryPolicy | None = None):
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self.busy_retry = busy_retry or BusyRetryPolicy()
        try:
            for pragma in _PRAGMAS:
                self._conn.execute(pragma)
            self._initialize_schema()
        except sqlite3.Error:
            self._conn.close()
            raise

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(query, params)

    def fetchone(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one write transaction; any exception rolls it back."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._rollback_quietly()
                raise
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error:
                self._rollback_quietly()
                raise

    def _rollback_quietly(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as ex:
            logger.warning(f"Rollback failed: {ex}")

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '',
                created INTEGER NOT NULL,
                updated INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant', 'tool')),
                content TEXT NOT NULL DEFAULT '',
                reasoning TEXT NOT NULL DEFAULT '',
                tool_calls TEXT NOT NULL DEFAULT '[]',
                tool_call_id TEXT NOT NULL DEFAULT '',
                created INTEGER NOT NULL,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS fetch_cache (
                url TEXT PRIMARY KEY,
                result TEXT NOT NULL,
                created INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS search_cache (
                query TEXT PRIMARY KEY,
                result TEXT NOT NULL,
                created INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS file_deltas (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                turn_id INTEGER NOT NULL,
                file_path TEXT NOT NULL,
                op TEXT NOT NULL CHECK (op IN ('modify', 'create')),
                old_content BLOB NULL,
                created INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_session_id
                ON messages(session_id, id);
            CREATE INDEX IF NOT EXISTS idx_fetch_created
                ON fetch_cache(created);
            CREATE INDEX IF NOT EXISTS idx_search_created
                ON search_cache(created);
            CREATE INDEX IF NOT EXISTS idx_file_deltas_turn
                ON file_deltas(session_id, turn_id);
            """
        )
