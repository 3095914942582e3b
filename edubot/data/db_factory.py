"""Database factory — creates the storage backend selected by config."""

from __future__ import annotations

from edubot.config import settings
from edubot.ports.database_port import Database


def create_database() -> Database:
    """Return the backend matching the DB_TYPE setting (not yet connected)."""
    db_type = settings.DB_TYPE.lower()

    if db_type == "sqlite":
        from edubot.data.sqlite_db import SqliteDatabase

        return SqliteDatabase(settings.DATABASE_PATH)

    if db_type in ("postgresql", "postgres"):
        from edubot.data.postgres_db import PostgresDatabase

        return PostgresDatabase(settings.DATABASE_URL)

    raise ValueError(f"Unknown DB_TYPE: {db_type!r}")
