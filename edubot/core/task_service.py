"""
EduBot — Task Service.

What the command layer calls for smart tasks: parse free text, create the
task (with a due-time reminder when a chat is given), list with filters,
complete or cancel, sweep overdue tasks and report statistics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta, tzinfo
from typing import TYPE_CHECKING

from edubot.core import parser
from edubot.core.recurrence import add_interval
from edubot.data.models import (
    TITLE_MAX_LENGTH,
    Category,
    Priority,
    RecurrenceRule,
    Task,
    TaskStats,
    TaskStatus,
)

if TYPE_CHECKING:
    from edubot.core.clock import Clock
    from edubot.core.reminder_service import ReminderService
    from edubot.data.task_db import TaskDB

logger = logging.getLogger(__name__)

_STATUS_WORDS = {s.value for s in TaskStatus}
_PRIORITY_WORDS = {p.value for p in Priority}
_CATEGORY_WORDS = {c.value for c in Category}


@dataclass
class TaskFilters:
    """Optional filters for list_tasks; None means "any"."""

    status: TaskStatus | None = None
    category: Category | None = None
    priority: Priority | None = None
    due_on: date | None = None

    @classmethod
    def from_words(cls, words: list[str], today: date) -> TaskFilters:
        """Build filters from /tasks arguments, e.g. ["pending", "study", "today"].

        Each word may name a status, category or priority value, or one of
        "today" / "tomorrow". Unrecognised words are ignored.
        """
        filters = cls()
        for word in (w.lower() for w in words):
            if word in _STATUS_WORDS:
                filters.status = TaskStatus(word)
            elif word in _PRIORITY_WORDS:
                filters.priority = Priority(word)
            elif word in _CATEGORY_WORDS:
                filters.category = Category(word)
            elif word == "today":
                filters.due_on = today
            elif word == "tomorrow":
                filters.due_on = today + timedelta(days=1)
        return filters


class TaskService:
    """Task lifecycle on top of the task store and the reminder service."""

    def __init__(
        self,
        store: TaskDB,
        reminders: ReminderService,
        clock: Clock,
        tz: tzinfo,
    ) -> None:
        self._store = store
        self._reminders = reminders
        self._clock = clock
        self._tz = tz

    def today(self) -> date:
        return self._clock.now().astimezone(self._tz).date()

    def parse_task_input(self, text: str) -> parser.ParsedTask | parser.ParseError:
        return parser.parse_task_input(text, self._clock.now().astimezone(self._tz))

    async def create_task(
        self,
        owner: int,
        parsed: parser.ParsedTask,
        recurrence: RecurrenceRule | None = None,
        target: str | None = None,
    ) -> int:
        """Persist a parsed task and return its id.

        A recurring task without a due time starts one interval from now.
        When `target` is given and the due time is in the future, a
        "Task due" reminder linked to the task is scheduled for it.
        """
        now = self._clock.now()
        title = parsed.title[:TITLE_MAX_LENGTH]
        due_at = parsed.due_at
        if recurrence is not None and due_at is None:
            local_now = now.astimezone(self._tz).replace(second=0, microsecond=0)
            due_at = add_interval(local_now, recurrence.frequency, recurrence.interval)

        task = await self._store.create_task(
            owner,
            title,
            now=now,
            description=parsed.description,
            priority=parsed.priority,
            category=parsed.category,
            due_at=due_at,
            tags=parsed.tags,
            recurrence=recurrence,
            series_start=due_at if recurrence is not None else None,
        )

        if target is not None and due_at is not None and due_at > now:
            result = await self._reminders.add_reminder(
                target, due_at, f"Task due: {title}", task_id=task.id,
            )
            if isinstance(result, int):
                logger.info("Task #%d due reminder #%d scheduled", task.id, result)
            else:
                logger.warning("Task #%d due reminder rejected: %s", task.id, result.reason)
        return task.id

    async def list_tasks(self, owner: int, filters: TaskFilters | None = None) -> list[Task]:
        filters = filters or TaskFilters()
        return await self._store.query_tasks(
            owner,
            status=filters.status,
            category=filters.category,
            priority=filters.priority,
            due_on=filters.due_on,
            tz=self._tz,
        )

    async def complete_task(self, task_id: int, owner: int) -> bool:
        """Complete an open task of `owner` and cancel its pending reminders."""
        return await self._close(task_id, owner, TaskStatus.COMPLETED)

    async def cancel_task(self, task_id: int, owner: int) -> bool:
        return await self._close(task_id, owner, TaskStatus.CANCELLED)

    async def _close(self, task_id: int, owner: int, status: TaskStatus) -> bool:
        if not await self._store.update_task_status(
            task_id, status, owner=owner, now=self._clock.now(),
        ):
            return False
        cancelled = await self._reminders.cancel_task_reminders(task_id)
        if cancelled:
            logger.info("Cancelled %d reminder(s) of task #%d", cancelled, task_id)
        return True

    async def sweep_overdue(self) -> int:
        return await self._store.sweep_overdue(self._clock.now())

    async def stats(self, owner: int) -> TaskStats:
        return await self._store.task_stats(owner)
