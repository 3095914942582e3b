"""Tests for edubot.data.postgres_db — SQL conversion and the asyncpg wrapper.

No server needed: the pool and connections are mocks.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from edubot.data.postgres_db import PostgresDatabase, _PgExecutor, _status_count, to_postgres_sql
from edubot.ports.database_port import RunResult, StorageError


def _mock_conn():
    conn = MagicMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.execute = AsyncMock(return_value="UPDATE 0")
    return conn


def _mock_pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.close = AsyncMock()
    return pool


class TestToPostgresSql:
    def test_placeholders_are_numbered(self):
        assert to_postgres_sql("SELECT * FROM t WHERE a = ? AND b IN (?, ?)") == (
            "SELECT * FROM t WHERE a = $1 AND b IN ($2, $3)"
        )

    def test_autoincrement_becomes_serial(self):
        sql = "CREATE TABLE t (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT)"
        assert to_postgres_sql(sql) == "CREATE TABLE t (id SERIAL PRIMARY KEY, name TEXT)"

    def test_datetime_becomes_timestamp(self):
        assert to_postgres_sql("ALTER TABLE t ADD COLUMN at DATETIME") == (
            "ALTER TABLE t ADD COLUMN at TIMESTAMP"
        )

    def test_no_placeholders(self):
        assert to_postgres_sql("SELECT 1") == "SELECT 1"


class TestStatusCount:
    @pytest.mark.parametrize("status,expected", [
        ("UPDATE 3", 3), ("DELETE 0", 0), ("CREATE TABLE", 0), ("", 0),
    ])
    def test_parse(self, status, expected):
        assert _status_count(status) == expected


class TestExecutor:
    @pytest.mark.asyncio
    async def test_insert_appends_returning_id(self):
        conn = _mock_conn()
        conn.fetchrow.return_value = {"id": 17}
        result = await _PgExecutor(conn).run("INSERT INTO t (a) VALUES (?)", ("x",))

        assert result == RunResult(last_id=17, changes=1)
        conn.fetchrow.assert_awaited_once_with("INSERT INTO t (a) VALUES ($1) RETURNING id", "x")

    @pytest.mark.asyncio
    async def test_update_reports_changes(self):
        conn = _mock_conn()
        conn.execute.return_value = "UPDATE 2"
        result = await _PgExecutor(conn).run("UPDATE t SET a = ? WHERE b = ?", (1, 2))

        assert result == RunResult(last_id=None, changes=2)
        conn.execute.assert_awaited_once_with("UPDATE t SET a = $1 WHERE b = $2", 1, 2)

    @pytest.mark.asyncio
    async def test_get_returns_dict_or_none(self):
        conn = _mock_conn()
        executor = _PgExecutor(conn)
        assert await executor.get("SELECT * FROM t WHERE id = ?", (1,)) is None

        conn.fetchrow.return_value = {"id": 1, "name": "a"}
        assert await executor.get("SELECT * FROM t WHERE id = ?", (1,)) == {"id": 1, "name": "a"}

    @pytest.mark.asyncio
    async def test_all_returns_dicts(self):
        conn = _mock_conn()
        conn.fetch.return_value = [{"id": 1}, {"id": 2}]
        assert await _PgExecutor(conn).all("SELECT id FROM t") == [{"id": 1}, {"id": 2}]

    @pytest.mark.asyncio
    async def test_driver_error_becomes_storage_error(self):
        conn = _mock_conn()
        conn.fetch.side_effect = asyncpg.InterfaceError("connection is closed")
        with pytest.raises(StorageError, match="connection is closed"):
            await _PgExecutor(conn).all("SELECT 1")


class TestPostgresDatabase:
    @pytest.mark.asyncio
    async def test_not_connected_raises(self):
        db = PostgresDatabase("postgresql://localhost/edubot")
        with pytest.raises(StorageError):
            await db.get("SELECT 1")

    @pytest.mark.asyncio
    async def test_connect_creates_pool_and_runs_queries(self):
        conn = _mock_conn()
        conn.fetchrow.return_value = {"n": 1}
        pool = _mock_pool(conn)

        with patch("edubot.data.postgres_db.asyncpg.create_pool", AsyncMock(return_value=pool)) as create:
            db = PostgresDatabase("postgresql://localhost/edubot", min_size=2, max_size=5)
            await db.connect()
            await db.connect()  # second call is a no-op

        create.assert_awaited_once()
        assert create.call_args.kwargs["min_size"] == 2
        assert await db.get("SELECT ? AS n", (1,)) == {"n": 1}
        conn.fetchrow.assert_awaited_with("SELECT $1 AS n", 1)

        await db.close()
        pool.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        with patch("edubot.data.postgres_db.asyncpg.create_pool",
                   AsyncMock(side_effect=OSError("refused"))):
            db = PostgresDatabase("postgresql://localhost/edubot")
            with pytest.raises(StorageError):
                await db.connect()

    @pytest.mark.asyncio
    async def test_transaction_uses_one_connection(self):
        conn = _mock_conn()
        conn.execute.return_value = "UPDATE 1"
        pool = _mock_pool(conn)

        with patch("edubot.data.postgres_db.asyncpg.create_pool", AsyncMock(return_value=pool)):
            db = PostgresDatabase("postgresql://localhost/edubot")
            await db.connect()

        async with db.transaction() as tx:
            result = await tx.run("UPDATE t SET a = ?", (1,))

        assert result.changes == 1
        conn.transaction.assert_called_once()
        pool.acquire.assert_called_once()
