"""Shared test fixtures and configuration.

Sets up fake environment variables so edubot.config doesn't sys.exit(),
and provides a migrated temp-file database, a manual clock and the wired
services on top of them.
"""

import os

# Patch env vars BEFORE any edubot imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("ADMIN_USER_IDS", "12345")
os.environ.setdefault("DB_TYPE", "sqlite")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "Asia/Riyadh")

from datetime import datetime
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

RIYADH = ZoneInfo("Asia/Riyadh")
# Tuesday, mid-morning
START = datetime(2026, 3, 10, 10, 0, tzinfo=RIYADH)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_edubot.db")


@pytest_asyncio.fixture
async def db(tmp_db_path):
    """Connected and migrated SqliteDatabase backed by a temp file."""
    from edubot.data.sqlite_db import SqliteDatabase
    database = SqliteDatabase(tmp_db_path)
    await database.connect()
    await database.migrate()
    yield database
    await database.close()


@pytest.fixture
def store(db):
    from edubot.data.task_db import TaskDB
    return TaskDB(db)


@pytest.fixture
def clock():
    from edubot.core.clock import ManualClock
    return ManualClock(START)


@pytest.fixture
def scheduler(clock):
    from edubot.core.job_scheduler import JobScheduler
    return JobScheduler(clock)


@pytest.fixture
def dispatcher():
    """Notifier double whose sends succeed unless told otherwise."""
    notifier = AsyncMock()
    notifier.send_message = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def reminders(scheduler, store, dispatcher, clock):
    from edubot.core.reminder_service import ReminderService
    return ReminderService(scheduler, store, dispatcher, clock, RIYADH, lookahead_days=30)


@pytest.fixture
def tasks(store, reminders, clock):
    from edubot.core.task_service import TaskService
    return TaskService(store, reminders, clock, RIYADH)
