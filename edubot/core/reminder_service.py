"""
EduBot — Reminder Service.

The only component that bridges persisted reminder rows and in-memory jobs:
  - initialize() re-registers every pending row after a restart and delivers
    rows whose time passed while the bot was down (catch-up);
  - add_reminder() persists first, then schedules with the row id as job id;
  - when a job fires, the row is re-read, the notification is sent, and the
    row is marked delivered. Recurring tasks then advance to their next
    occurrence and get one new reminder.

The persisted `delivered` flag is the source of truth: a restart never
re-sends a reminder that was delivered, and a failed dispatch leaves the row
undelivered for the /undelivered diagnostic. There are no automatic retries.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import TYPE_CHECKING

from edubot.core.recurrence import max_gap, next_occurrence
from edubot.data.models import Reminder, TaskStatus

if TYPE_CHECKING:
    from edubot.core.clock import Clock
    from edubot.core.job_scheduler import JobScheduler
    from edubot.data.task_db import TaskDB
    from edubot.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

NOT_IN_FUTURE = "reminder time must be in the future"
EMPTY_MESSAGE = "reminder message is empty"
SCHEDULER_CLOSED = "scheduler is not accepting new reminders"


@dataclass(frozen=True)
class ReminderRejected:
    """add_reminder refused the request; `reason` is safe to show users."""

    reason: str


class ReminderService:
    """Keeps persisted reminders and scheduled jobs in step."""

    def __init__(
        self,
        scheduler: JobScheduler,
        store: TaskDB,
        dispatcher: NotificationPort,
        clock: Clock,
        tz: tzinfo,
        lookahead_days: int = 30,
    ) -> None:
        self._scheduler = scheduler
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock
        self._tz = tz  # recurrence steps follow local wall-clock time
        self._lookahead = timedelta(days=lookahead_days)

    async def initialize(self) -> int:
        """Load pending rows: schedule future ones, deliver overdue ones now.

        Returns the number of rows handled.
        """
        now = self._clock.now()
        scheduled = caught_up = 0
        for reminder in await self._store.list_pending_reminders():
            if reminder.fire_at > now:
                if self._schedule(reminder):
                    scheduled += 1
            else:
                logger.info("Reminder #%d missed its time (%s), delivering now",
                            reminder.id, reminder.fire_at.isoformat())
                await self._deliver(reminder.id)
                caught_up += 1
        logger.info("Reminder service initialized: %d scheduled, %d caught up",
                    scheduled, caught_up)
        return scheduled + caught_up

    async def add_reminder(
        self,
        target: str,
        fire_at: datetime,
        message: str,
        task_id: int | None = None,
    ) -> int | ReminderRejected:
        """Persist and schedule a one-shot reminder. Returns the reminder id."""
        now = self._clock.now()
        if fire_at <= now:
            return ReminderRejected(NOT_IN_FUTURE)
        if not message.strip():
            return ReminderRejected(EMPTY_MESSAGE)

        reminder = await self._store.create_reminder_row(
            target, fire_at, message, now=now, task_id=task_id,
        )
        if not self._schedule(reminder):
            # Keep the row from being picked up again on the next restart.
            await self._store.mark_reminder_cancelled(reminder.id)
            return ReminderRejected(SCHEDULER_CLOSED)
        return reminder.id

    async def cancel_reminder(self, reminder_id: int) -> bool:
        """Cancel the row, then the job. True only if both were still pending.

        A reminder without a pending job (already fired, even if delivery
        failed) is left untouched. The row goes before the job: a job dropped
        from memory while its row stayed pending would be scheduled again on
        the next restart.
        """
        if str(reminder_id) not in self._scheduler.list_jobs():
            logger.info("Reminder #%d not cancelled: no pending job", reminder_id)
            return False
        if not await self._store.mark_reminder_cancelled(reminder_id):
            logger.info("Reminder #%d not cancelled: missing, delivered or already cancelled",
                        reminder_id)
            return False
        if not self._scheduler.cancel(str(reminder_id)):
            # Fired while the row was being updated; delivery sees the cancelled row.
            logger.warning("Reminder #%d fired during cancellation", reminder_id)
            return False
        return True

    async def cancel_task_reminders(self, task_id: int) -> int:
        """Cancel every pending reminder attached to a task."""
        cancelled = 0
        for reminder in await self._store.list_pending_reminders(task_id=task_id):
            if await self.cancel_reminder(reminder.id):
                cancelled += 1
        return cancelled

    async def list_reminders(self, target: str) -> list[Reminder]:
        return await self._store.list_pending_reminders(target=target)

    async def undelivered(self) -> list[Reminder]:
        """Reminders whose time passed without a successful delivery."""
        return await self._store.list_undelivered(self._clock.now())

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def _schedule(self, reminder: Reminder) -> bool:
        return self._scheduler.schedule(
            reminder.job_id,
            reminder.fire_at,
            functools.partial(self._deliver, reminder.id),
        )

    async def _deliver(self, reminder_id: int) -> bool:
        """Send one reminder. True when it was delivered by this call."""
        reminder = await self._store.get_reminder(reminder_id)
        if reminder is None or reminder.delivered or reminder.cancelled:
            logger.info("Reminder #%d skipped: missing, delivered or cancelled", reminder_id)
            return False

        try:
            sent = await self._dispatcher.send_message(reminder.target, reminder.message)
        except Exception:
            logger.exception("Dispatching reminder #%d to %s raised", reminder.id, reminder.target)
            sent = False

        delivered = False
        if not sent:
            logger.error("Reminder #%d to %s was not delivered", reminder.id, reminder.target)
        elif await self._store.mark_reminder_delivered(reminder.id, self._clock.now()):
            logger.info("Reminder #%d delivered to %s", reminder.id, reminder.target)
            delivered = True
        else:
            logger.warning("Reminder #%d was already closed by another path", reminder.id)

        if reminder.task_id is not None:
            await self._advance_recurrence(reminder)
        return delivered

    async def _advance_recurrence(self, reminder: Reminder) -> int | None:
        """Move a recurring task to its next occurrence and remind about it.

        The task row is not duplicated; only its due time moves forward.
        Occurrences that passed while the bot was down are skipped.
        """
        task = await self._store.get_task(reminder.task_id)
        if task is None or task.recurrence is None or task.status is not TaskStatus.PENDING:
            return None
        if task.due_at is not None and task.due_at > reminder.fire_at:
            # Already advanced past this occurrence.
            return None

        now = self._clock.now()
        # Stored times come back in UTC; calendar steps must use the local date.
        anchor = (task.series_start or task.due_at or reminder.fire_at).astimezone(self._tz)
        after = max(now, reminder.fire_at).astimezone(self._tz)
        horizon = now + self._lookahead + max_gap(task.recurrence)
        next_due = next_occurrence(task.recurrence, anchor, after, horizon)
        if next_due is None:
            logger.info("Recurring task #%d has no further occurrences", task.id)
            return None

        if not await self._store.update_task_due(task.id, next_due):
            return None
        logger.info("Recurring task #%d advanced to %s", task.id, next_due.isoformat())

        result = await self.add_reminder(reminder.target, next_due, reminder.message,
                                         task_id=task.id)
        if isinstance(result, ReminderRejected):
            logger.warning("Next reminder for task #%d not scheduled: %s", task.id, result.reason)
            return None
        return result
