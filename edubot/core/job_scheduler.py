"""
EduBot — Job Scheduler.

Owns the in-memory set of pending one-shot jobs (reminders, task due alerts)
and fires each job's callback once its time has come. Nothing else in the
process touches the pending set; callers go through schedule / cancel /
list_jobs.

Each job moves scheduled -> fired or scheduled -> cancelled, both terminal.
A job leaves the pending set *before* its callback runs, so a callback that
schedules follow-up work sees a clean set, and cancelling the firing job from
inside its own callback reports "not found".

Timing is delegated to python-telegram-bot's JobQueue: once `start()` is
given the application's job queue, every pending job is armed as a
`run_once` timer named after its job id. Tests skip the job queue and call
`run_due()` after moving a manual clock.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from telegram.ext import ContextTypes, Job, JobQueue

    from edubot.core.clock import Clock

logger = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[None]]


@dataclass
class _Job:
    job_id: str
    fire_at: datetime
    callback: JobCallback


class JobScheduler:
    """Timer set with explicit schedule / cancel / shutdown semantics.

    Ids of fired and cancelled jobs are remembered for the life of the
    process so they can never be scheduled again. That set grows by one
    short string per reminder; reminder ids come from the database and are
    not reused either, so it is never pruned.
    """

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._pending: dict[str, _Job] = {}
        self._retired: set[str] = set()
        self._inflight: set[asyncio.Task] = set()
        self._closed = False
        self._job_queue: JobQueue | None = None
        self._timers: dict[str, Job] = {}

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def schedule(self, job_id: str, fire_at: datetime, callback: JobCallback) -> bool:
        """Register a job. False when closed, duplicate, or not strictly in the future."""
        if self._closed:
            logger.warning("Rejected job %s: scheduler is shut down", job_id)
            return False
        if job_id in self._pending or job_id in self._retired:
            logger.warning("Rejected job %s: id already used", job_id)
            return False
        if fire_at <= self._clock.now():
            logger.warning("Rejected job %s: fire time %s is not in the future",
                           job_id, fire_at.isoformat())
            return False

        job = _Job(job_id=job_id, fire_at=fire_at, callback=callback)
        self._pending[job_id] = job
        if self._job_queue is not None:
            self._arm(job)
        logger.info("Job %s scheduled for %s", job_id, fire_at.isoformat())
        return True

    def cancel(self, job_id: str) -> bool:
        """Drop a pending job. False if it already fired, was cancelled, or never existed."""
        job = self._pending.pop(job_id, None)
        if job is None:
            return False
        self._retired.add(job_id)
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.schedule_removal()
        logger.info("Job %s cancelled", job_id)
        return True

    def list_jobs(self) -> set[str]:
        """Ids of jobs that are still waiting to fire."""
        return set(self._pending)

    def next_fire_at(self) -> datetime | None:
        if not self._pending:
            return None
        return min(job.fire_at for job in self._pending.values())

    async def run_due(self) -> int:
        """Fire every due job and wait for their callbacks. Returns how many fired."""
        tasks = [self._launch(job) for job in self._take_due()]
        if tasks:
            await asyncio.gather(*tasks)
        return len(tasks)

    def cancel_all(self) -> int:
        """Cancel every pending job and refuse new ones from now on.

        Armed timers are left to the job queue, which is stopped before this
        runs at shutdown; a timer that still fires finds nothing pending.
        """
        self._closed = True
        count = len(self._pending)
        self._retired.update(self._pending)
        self._pending.clear()
        self._timers.clear()
        logger.info("Scheduler closed, %d pending job(s) cancelled", count)
        return count

    # ------------------------------------------------------------------
    # Job queue timers
    # ------------------------------------------------------------------

    def start(self, job_queue: JobQueue) -> None:
        """Arm a timer on `job_queue` for every pending and future job."""
        if self._closed:
            raise RuntimeError("Cannot start a scheduler that has been shut down")
        if self._job_queue is not None:
            return
        self._job_queue = job_queue
        for job in sorted(self._pending.values(), key=lambda j: j.fire_at):
            self._arm(job)
        logger.info("Job scheduler started with %d pending job(s)", len(self._pending))

    async def shutdown(self) -> None:
        """Cancel all pending jobs and let running callbacks finish."""
        self.cancel_all()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Job scheduler stopped")

    def _arm(self, job: _Job) -> None:
        self._timers[job.job_id] = self._job_queue.run_once(
            self._on_timer,
            when=job.fire_at,
            data=job.job_id,
            name=job.job_id,
        )

    async def _on_timer(self, context: ContextTypes.DEFAULT_TYPE) -> None:
        job_id = context.job.data
        self._timers.pop(job_id, None)
        job = self._pending.pop(job_id, None)
        if job is None:
            return
        self._retired.add(job_id)
        await self._launch(job)

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def _take_due(self) -> list[_Job]:
        now = self._clock.now()
        due = sorted(
            (job for job in self._pending.values() if job.fire_at <= now),
            key=lambda job: job.fire_at,
        )
        for job in due:
            del self._pending[job.job_id]
            self._timers.pop(job.job_id, None)
            self._retired.add(job.job_id)
        return due

    def _launch(self, job: _Job) -> asyncio.Task:
        task = asyncio.create_task(self._invoke(job), name=f"job-{job.job_id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _invoke(self, job: _Job) -> None:
        logger.info("Job %s fired", job.job_id)
        try:
            await job.callback()
        except Exception:
            # The job still counts as fired; retry policy belongs to the caller.
            logger.exception("Job %s callback failed", job.job_id)
