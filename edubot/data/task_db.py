"""
EduBot — Task Store.

Persists tasks and reminder rows through the Database port, so the same
store runs on SQLite locally and on PostgreSQL when hosted.

Every state change is a conditional UPDATE (`... WHERE status IN (...)`,
`... WHERE delivered = 0`), so two callbacks racing on the same row can
never both win; the loser simply sees zero changed rows.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable

from edubot.data.models import (
    Category,
    Priority,
    RecurrenceRule,
    Reminder,
    Task,
    TaskStats,
    TaskStatus,
)
from edubot.ports.database_port import Database, Row

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (TaskStatus.PENDING.value, TaskStatus.OVERDUE.value)
_TERMINAL_TARGETS = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)

_TASK_ORDER = """
    ORDER BY CASE priority WHEN 'high' THEN 1 WHEN 'medium' THEN 2 ELSE 3 END,
             CASE WHEN due_at IS NULL THEN 1 ELSE 0 END,
             due_at,
             created_at DESC,
             id DESC
"""


def _to_db(value: datetime | None) -> str | None:
    """Aware datetime -> fixed-width UTC ISO text (sorts lexicographically)."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    return datetime.fromisoformat(raw)


class TaskDB:
    """Storage for tasks and their reminders."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_task(row: Row) -> Task:
        return Task(
            id=row["id"],
            owner=row["owner"],
            title=row["title"],
            description=row["description"],
            priority=Priority(row["priority"]),
            category=Category(row["category"]),
            due_at=_from_db(row["due_at"]),
            tags=set(json.loads(row["tags"])),
            recurrence=RecurrenceRule.from_json(row["recurrence"]) if row["recurrence"] else None,
            series_start=_from_db(row["series_start"]),
            status=TaskStatus(row["status"]),
            created_at=_from_db(row["created_at"]),
            completed_at=_from_db(row["completed_at"]),
        )

    @staticmethod
    def _row_to_reminder(row: Row) -> Reminder:
        return Reminder(
            id=row["id"],
            target=row["target"],
            fire_at=_from_db(row["fire_at"]),
            message=row["message"],
            delivered=bool(row["delivered"]),
            cancelled=bool(row["cancelled"]),
            task_id=row["task_id"],
            created_at=_from_db(row["created_at"]),
            delivered_at=_from_db(row["delivered_at"]),
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def create_task(
        self,
        owner: int,
        title: str,
        *,
        now: datetime,
        description: str = "",
        priority: Priority = Priority.MEDIUM,
        category: Category = Category.GENERAL,
        due_at: datetime | None = None,
        tags: Iterable[str] = (),
        recurrence: RecurrenceRule | None = None,
        series_start: datetime | None = None,
    ) -> Task:
        """Insert a new pending task and return it with its assigned id."""
        tag_set = set(tags)
        result = await self._db.run(
            """
            INSERT INTO tasks
                (owner, title, description, priority, category, due_at, tags,
                 recurrence, series_start, status, created_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
            """,
            (
                owner, title, description, priority.value, category.value,
                _to_db(due_at), json.dumps(sorted(tag_set), ensure_ascii=False),
                recurrence.to_json() if recurrence else None,
                _to_db(series_start), TaskStatus.PENDING.value, _to_db(now),
            ),
        )
        task = Task(
            id=result.last_id,
            owner=owner,
            title=title,
            description=description,
            priority=priority,
            category=category,
            due_at=due_at,
            tags=tag_set,
            recurrence=recurrence,
            series_start=series_start,
            status=TaskStatus.PENDING,
            created_at=now,
        )
        logger.info("Task #%d created for user %s: %r", task.id, owner, title)
        return task

    async def get_task(self, task_id: int) -> Task | None:
        row = await self._db.get("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    async def update_task_status(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        now: datetime,
        owner: int | None = None,
    ) -> bool:
        """Move an open (pending/overdue) task to completed or cancelled.

        Returns False when the task does not exist, belongs to someone else,
        or is already completed/cancelled. Targets other than completed and
        cancelled are programmer errors: overdue is reached only through
        sweep_overdue, and nothing ever returns to pending.
        """
        if status not in _TERMINAL_TARGETS:
            raise ValueError(f"Cannot set task status to {status.value!r} directly")

        completed_at = _to_db(now) if status is TaskStatus.COMPLETED else None
        sql = """
            UPDATE tasks SET status = ?, completed_at = ?
            WHERE id = ? AND status IN (?, ?)
        """
        params: list = [status.value, completed_at, task_id, *_OPEN_STATUSES]
        if owner is not None:
            sql += " AND owner = ?"
            params.append(owner)

        result = await self._db.run(sql, params)
        if result.changes:
            logger.info("Task #%d marked %s", task_id, status.value)
            return True
        logger.debug("Task #%d not updated to %s (missing, foreign or closed)",
                     task_id, status.value)
        return False

    async def update_task_due(self, task_id: int, due_at: datetime) -> bool:
        """Advance the due time of a pending task (next recurrence occurrence)."""
        result = await self._db.run(
            "UPDATE tasks SET due_at = ? WHERE id = ? AND status = ?",
            (_to_db(due_at), task_id, TaskStatus.PENDING.value),
        )
        return result.changes > 0

    async def query_tasks(
        self,
        owner: int,
        *,
        status: TaskStatus | None = None,
        category: Category | None = None,
        priority: Priority | None = None,
        due_on: date | None = None,
        tz: tzinfo = timezone.utc,
    ) -> list[Task]:
        """Tasks of one owner, high priority first, then earliest due, then newest.

        `due_on` selects tasks due on that calendar day in `tz`.
        """
        clauses = ["owner = ?"]
        params: list = [owner]
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if category is not None:
            clauses.append("category = ?")
            params.append(category.value)
        if priority is not None:
            clauses.append("priority = ?")
            params.append(priority.value)
        if due_on is not None:
            day_start = datetime.combine(due_on, time.min, tzinfo=tz)
            clauses.append("due_at >= ? AND due_at < ?")
            params.extend([_to_db(day_start), _to_db(day_start + timedelta(days=1))])

        rows = await self._db.all(
            f"SELECT * FROM tasks WHERE {' AND '.join(clauses)} {_TASK_ORDER}",
            params,
        )
        return [self._row_to_task(row) for row in rows]

    async def sweep_overdue(self, now: datetime) -> int:
        """Mark pending tasks whose due time has passed as overdue."""
        result = await self._db.run(
            """
            UPDATE tasks SET status = ?
            WHERE status = ? AND due_at IS NOT NULL AND due_at < ?
            """,
            (TaskStatus.OVERDUE.value, TaskStatus.PENDING.value, _to_db(now)),
        )
        if result.changes:
            logger.info("Marked %d task(s) overdue", result.changes)
        return result.changes

    async def task_stats(self, owner: int) -> TaskStats:
        rows = await self._db.all(
            """
            SELECT status, priority, category, COUNT(*) AS n
            FROM tasks WHERE owner = ?
            GROUP BY status, priority, category
            """,
            (owner,),
        )
        stats = TaskStats()
        for row in rows:
            n = int(row["n"])
            stats.total += n
            status = TaskStatus(row["status"])
            if status is TaskStatus.COMPLETED:
                stats.completed += n
            elif status is TaskStatus.PENDING:
                stats.pending += n
            elif status is TaskStatus.OVERDUE:
                stats.overdue += n
            else:
                stats.cancelled += n
            stats.by_priority[row["priority"]] = stats.by_priority.get(row["priority"], 0) + n
            stats.by_category[row["category"]] = stats.by_category.get(row["category"], 0) + n
        return stats

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    async def create_reminder_row(
        self,
        target: str,
        fire_at: datetime,
        message: str,
        *,
        now: datetime,
        task_id: int | None = None,
    ) -> Reminder:
        result = await self._db.run(
            """
            INSERT INTO reminders
                (target, fire_at, message, delivered, cancelled, task_id, created_at)
            VALUES (?, ?, ?, 0, 0, ?, ?)
            """,
            (target, _to_db(fire_at), message, task_id, _to_db(now)),
        )
        reminder = Reminder(
            id=result.last_id,
            target=target,
            fire_at=fire_at,
            message=message,
            created_at=now,
            task_id=task_id,
        )
        logger.info("Reminder #%d stored for %s at %s", reminder.id, target, fire_at.isoformat())
        return reminder

    async def get_reminder(self, reminder_id: int) -> Reminder | None:
        row = await self._db.get("SELECT * FROM reminders WHERE id = ?", (reminder_id,))
        return self._row_to_reminder(row) if row else None

    async def list_pending_reminders(
        self,
        task_id: int | None = None,
        target: str | None = None,
    ) -> list[Reminder]:
        """Reminders neither delivered nor cancelled, earliest first."""
        sql = "SELECT * FROM reminders WHERE delivered = 0 AND cancelled = 0"
        params: list = []
        if task_id is not None:
            sql += " AND task_id = ?"
            params.append(task_id)
        if target is not None:
            sql += " AND target = ?"
            params.append(target)
        rows = await self._db.all(sql + " ORDER BY fire_at, id", params)
        return [self._row_to_reminder(row) for row in rows]

    async def list_undelivered(self, now: datetime) -> list[Reminder]:
        """Reminders whose time has passed without a successful delivery."""
        rows = await self._db.all(
            """
            SELECT * FROM reminders
            WHERE delivered = 0 AND cancelled = 0 AND fire_at <= ?
            ORDER BY fire_at, id
            """,
            (_to_db(now),),
        )
        return [self._row_to_reminder(row) for row in rows]

    async def mark_reminder_delivered(self, reminder_id: int, now: datetime) -> bool:
        """Set delivered once. False if already delivered or cancelled."""
        result = await self._db.run(
            """
            UPDATE reminders SET delivered = 1, delivered_at = ?
            WHERE id = ? AND delivered = 0 AND cancelled = 0
            """,
            (_to_db(now), reminder_id),
        )
        return result.changes > 0

    async def mark_reminder_cancelled(self, reminder_id: int) -> bool:
        """Cancel a pending reminder row. False if missing, delivered or already cancelled."""
        result = await self._db.run(
            """
            UPDATE reminders SET cancelled = 1
            WHERE id = ? AND delivered = 0 AND cancelled = 0
            """,
            (reminder_id,),
        )
        if result.changes:
            logger.info("Reminder #%d cancelled in storage", reminder_id)
        return result.changes > 0
