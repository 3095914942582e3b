"""
EduBot — SQLite backend.

Embedded file database for local runs and tests. One connection is held for
the life of the process; statements run synchronously inside the coroutine
methods, which is fine for a local file and keeps the same async interface
as the PostgreSQL backend.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Sequence

from edubot.data.migrations import apply_migrations
from edubot.ports.database_port import Executor, Row, RunResult, StorageError, is_insert

logger = logging.getLogger(__name__)


class SqliteDatabase:
    """SQLite implementation of the Database port."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._in_transaction = False

    async def connect(self) -> None:
        if self._conn is not None:
            return
        in_memory = self._db_path == ":memory:"
        if not in_memory:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # isolation_level=None: autocommit, transactions are explicit BEGIN/COMMIT
            conn = sqlite3.connect(self._db_path, isolation_level=None, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            if not in_memory:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error as exc:
            logger.error("Failed to open SQLite database %s: %s", self._db_path, exc)
            raise StorageError(f"Cannot open SQLite database {self._db_path}") from exc
        self._conn = conn
        logger.info("Connected to SQLite database: %s", self._db_path)

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("SQLite connection closed")

    def _execute(self, sql: str, params: Sequence[Any]) -> sqlite3.Cursor:
        if self._conn is None:
            raise StorageError("SQLite database is not connected")
        try:
            return self._conn.execute(sql, tuple(params))
        except sqlite3.Error as exc:
            logger.error("SQLite error: %s (sql: %s)", exc, " ".join(sql.split())[:200])
            raise StorageError(str(exc)) from exc

    async def get(self, sql: str, params: Sequence[Any] = ()) -> Row | None:
        rows = self._execute(sql, params).fetchall()
        return dict(rows[0]) if rows else None

    async def all(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        return [dict(row) for row in self._execute(sql, params).fetchall()]

    async def run(self, sql: str, params: Sequence[Any] = ()) -> RunResult:
        cursor = self._execute(sql, params)
        return RunResult(
            last_id=cursor.lastrowid if is_insert(sql) else None,
            changes=max(cursor.rowcount, 0),
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Executor]:
        """BEGIN ... COMMIT, rolled back if the block raises."""
        if self._in_transaction:
            raise StorageError("Nested SQLite transactions are not supported")
        self._execute("BEGIN", ())
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._execute("ROLLBACK", ())
            raise
        else:
            self._execute("COMMIT", ())
        finally:
            self._in_transaction = False

    async def migrate(self) -> None:
        await apply_migrations(self)
