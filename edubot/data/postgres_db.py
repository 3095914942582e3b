"""
EduBot — PostgreSQL backend.

Networked relational database for hosted deployments, via an asyncpg
connection pool. Stores write SQLite-flavoured SQL; this module converts it:
`?` placeholders become `$1, $2, ...`, AUTOINCREMENT keys become SERIAL, and
INSERTs get `RETURNING id` so the new row id is available.
"""

from __future__ import annotations

import itertools
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Sequence

import asyncpg

from edubot.data.migrations import apply_migrations
from edubot.ports.database_port import Executor, Row, RunResult, StorageError, is_insert

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\?")
_AUTOINCREMENT_RE = re.compile(r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", re.IGNORECASE)
_DATETIME_RE = re.compile(r"\bDATETIME\b", re.IGNORECASE)

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def to_postgres_sql(sql: str) -> str:
    """Rewrite SQLite syntax and `?` placeholders for PostgreSQL."""
    sql = _AUTOINCREMENT_RE.sub("SERIAL PRIMARY KEY", sql)
    sql = _DATETIME_RE.sub("TIMESTAMP", sql)
    counter = itertools.count(1)
    return _PLACEHOLDER_RE.sub(lambda _: f"${next(counter)}", sql)


def _status_count(status: str) -> int:
    """Affected-row count from a command tag such as 'UPDATE 3'."""
    last = status.rsplit(" ", 1)[-1]
    return int(last) if last.isdigit() else 0


class _PgExecutor:
    """Runs statements on one acquired connection."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def get(self, sql: str, params: Sequence[Any] = ()) -> Row | None:
        try:
            row = await self._conn.fetchrow(to_postgres_sql(sql), *params)
        except _DRIVER_ERRORS as exc:
            raise _storage_error(exc, sql) from exc
        return dict(row) if row is not None else None

    async def all(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        try:
            rows = await self._conn.fetch(to_postgres_sql(sql), *params)
        except _DRIVER_ERRORS as exc:
            raise _storage_error(exc, sql) from exc
        return [dict(row) for row in rows]

    async def run(self, sql: str, params: Sequence[Any] = ()) -> RunResult:
        pg_sql = to_postgres_sql(sql)
        try:
            if is_insert(sql):
                if "RETURNING" not in pg_sql.upper():
                    pg_sql += " RETURNING id"
                row = await self._conn.fetchrow(pg_sql, *params)
                return RunResult(last_id=row["id"] if row is not None else None, changes=1)
            status = await self._conn.execute(pg_sql, *params)
        except _DRIVER_ERRORS as exc:
            raise _storage_error(exc, sql) from exc
        return RunResult(last_id=None, changes=_status_count(status))


def _storage_error(exc: Exception, sql: str) -> StorageError:
    logger.error("PostgreSQL error: %s (sql: %s)", exc, " ".join(sql.split())[:200])
    return StorageError(str(exc))


class PostgresDatabase:
    """PostgreSQL implementation of the Database port."""

    def __init__(
        self,
        dsn: str,
        min_size: int = 1,
        max_size: int = 10,
        command_timeout: float = 60.0,
    ) -> None:
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._command_timeout = command_timeout
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        if self._pool is not None:
            logger.warning("PostgreSQL pool already initialized")
            return
        logger.info("Initializing PostgreSQL pool (min=%d, max=%d)", self._min_size, self._max_size)
        try:
            self._pool = await asyncpg.create_pool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                command_timeout=self._command_timeout,
            )
        except _DRIVER_ERRORS as exc:
            logger.error("Failed to initialize PostgreSQL pool: %s", exc)
            raise StorageError("Cannot connect to PostgreSQL") from exc
        logger.info("PostgreSQL pool initialized")

    async def close(self) -> None:
        if self._pool is None:
            return
        await self._pool.close()
        self._pool = None
        logger.info("PostgreSQL pool closed")

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StorageError("PostgreSQL pool is not initialized")
        return self._pool

    async def get(self, sql: str, params: Sequence[Any] = ()) -> Row | None:
        async with self._require_pool().acquire() as conn:
            return await _PgExecutor(conn).get(sql, params)

    async def all(self, sql: str, params: Sequence[Any] = ()) -> list[Row]:
        async with self._require_pool().acquire() as conn:
            return await _PgExecutor(conn).all(sql, params)

    async def run(self, sql: str, params: Sequence[Any] = ()) -> RunResult:
        async with self._require_pool().acquire() as conn:
            return await _PgExecutor(conn).run(sql, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Executor]:
        """Acquire one connection and run the block inside BEGIN ... COMMIT."""
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                yield _PgExecutor(conn)

    async def migrate(self) -> None:
        await apply_migrations(self)
