"""
EduBot — Schema migrations.

Named, ordered migrations recorded in a `migrations` ledger table so each one
runs exactly once per database. Statements are written in SQLite syntax; the
PostgreSQL backend rewrites the few dialect differences.

Timestamps are stored as UTC ISO-8601 text on both backends, which keeps
comparisons (`fire_at <= ?`) identical everywhere.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from edubot.ports.database_port import Database

logger = logging.getLogger(__name__)

_LEDGER_SQL = """
    CREATE TABLE IF NOT EXISTS migrations (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        name        TEXT NOT NULL UNIQUE,
        executed_at TEXT NOT NULL
    )
"""

MIGRATIONS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("create_tables", (
        """
        CREATE TABLE IF NOT EXISTS tasks (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            owner        BIGINT  NOT NULL,
            title        TEXT    NOT NULL,
            description  TEXT    NOT NULL DEFAULT '',
            priority     TEXT    NOT NULL DEFAULT 'medium',
            category     TEXT    NOT NULL DEFAULT 'general',
            due_at       TEXT,
            tags         TEXT    NOT NULL DEFAULT '[]',
            recurrence   TEXT,
            series_start TEXT,
            status       TEXT    NOT NULL DEFAULT 'pending',
            created_at   TEXT    NOT NULL,
            completed_at TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS reminders (
            id           INTEGER PRIMARY KEY AUTOINCREMENT,
            target       TEXT    NOT NULL,
            fire_at      TEXT    NOT NULL,
            message      TEXT    NOT NULL,
            delivered    INTEGER NOT NULL DEFAULT 0,
            cancelled    INTEGER NOT NULL DEFAULT 0,
            task_id      INTEGER REFERENCES tasks(id) ON DELETE CASCADE,
            created_at   TEXT    NOT NULL,
            delivered_at TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_tasks_owner_status ON tasks(owner, status)",
        "CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(due_at)",
        "CREATE INDEX IF NOT EXISTS idx_reminders_pending ON reminders(delivered, cancelled, fire_at)",
        "CREATE INDEX IF NOT EXISTS idx_reminders_task ON reminders(task_id)",
    )),
)


async def apply_migrations(db: Database) -> list[str]:
    """Run every migration not yet in the ledger. Returns the names applied now."""
    await db.run(_LEDGER_SQL)
    applied = {row["name"] for row in await db.all("SELECT name FROM migrations")}

    newly_applied: list[str] = []
    for name, statements in MIGRATIONS:
        if name in applied:
            logger.debug("Migration %s already applied", name)
            continue
        async with db.transaction() as tx:
            for statement in statements:
                await tx.run(statement)
            await tx.run(
                "INSERT INTO migrations (name, executed_at) VALUES (?, ?)",
                (name, datetime.now(timezone.utc).isoformat()),
            )
        newly_applied.append(name)
        logger.info("Migration %s applied", name)
    return newly_applied
