"""Tests for edubot.core.job_scheduler — schedule / cancel / fire / shutdown."""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from edubot.core.job_scheduler import JobScheduler


class TestSchedule:
    def test_schedule_future_job(self, scheduler, clock):
        assert scheduler.schedule("1", clock.now() + timedelta(minutes=5), AsyncMock()) is True
        assert scheduler.list_jobs() == {"1"}

    def test_rejects_past_fire_time(self, scheduler, clock):
        assert scheduler.schedule("1", clock.now() - timedelta(seconds=1), AsyncMock()) is False
        assert scheduler.list_jobs() == set()

    def test_rejects_fire_time_equal_to_now(self, scheduler, clock):
        assert scheduler.schedule("1", clock.now(), AsyncMock()) is False

    def test_rejects_duplicate_pending_id(self, scheduler, clock):
        fire_at = clock.now() + timedelta(minutes=5)
        assert scheduler.schedule("1", fire_at, AsyncMock()) is True
        assert scheduler.schedule("1", fire_at + timedelta(minutes=1), AsyncMock()) is False
        assert scheduler.next_fire_at() == fire_at

    def test_next_fire_at(self, scheduler, clock):
        assert scheduler.next_fire_at() is None
        scheduler.schedule("late", clock.now() + timedelta(hours=2), AsyncMock())
        scheduler.schedule("early", clock.now() + timedelta(hours=1), AsyncMock())
        assert scheduler.next_fire_at() == clock.now() + timedelta(hours=1)


class TestCancel:
    def test_cancel_twice(self, scheduler, clock):
        scheduler.schedule("1", clock.now() + timedelta(minutes=5), AsyncMock())
        assert scheduler.cancel("1") is True
        assert scheduler.cancel("1") is False
        assert scheduler.list_jobs() == set()

    def test_cancel_unknown(self, scheduler):
        assert scheduler.cancel("nope") is False

    def test_cancelled_id_is_not_reused(self, scheduler, clock):
        scheduler.schedule("1", clock.now() + timedelta(minutes=5), AsyncMock())
        scheduler.cancel("1")
        assert scheduler.schedule("1", clock.now() + timedelta(minutes=10), AsyncMock()) is False

    @pytest.mark.asyncio
    async def test_cancelled_job_never_fires(self, scheduler, clock):
        callback = AsyncMock()
        scheduler.schedule("1", clock.now() + timedelta(minutes=5), callback)
        scheduler.cancel("1")
        clock.advance(minutes=10)
        assert await scheduler.run_due() == 0
        callback.assert_not_called()


class TestRunDue:
    @pytest.mark.asyncio
    async def test_fires_only_due_jobs(self, scheduler, clock):
        due, later = AsyncMock(), AsyncMock()
        scheduler.schedule("due", clock.now() + timedelta(minutes=1), due)
        scheduler.schedule("later", clock.now() + timedelta(hours=1), later)
        clock.advance(minutes=2)

        assert await scheduler.run_due() == 1
        due.assert_awaited_once()
        later.assert_not_called()
        assert scheduler.list_jobs() == {"later"}

    @pytest.mark.asyncio
    async def test_fires_exactly_once(self, scheduler, clock):
        callback = AsyncMock()
        scheduler.schedule("1", clock.now() + timedelta(minutes=1), callback)
        clock.advance(minutes=2)
        await scheduler.run_due()
        clock.advance(minutes=2)
        assert await scheduler.run_due() == 0
        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fired_id_is_not_reused(self, scheduler, clock):
        scheduler.schedule("1", clock.now() + timedelta(minutes=1), AsyncMock())
        clock.advance(minutes=2)
        await scheduler.run_due()
        assert scheduler.schedule("1", clock.now() + timedelta(minutes=1), AsyncMock()) is False

    @pytest.mark.asyncio
    async def test_fires_in_fire_time_order(self, scheduler, clock):
        order = []

        def _recorder(name):
            async def _callback():
                order.append(name)
            return _callback

        scheduler.schedule("b", clock.now() + timedelta(minutes=2), _recorder("b"))
        scheduler.schedule("a", clock.now() + timedelta(minutes=1), _recorder("a"))
        scheduler.schedule("c", clock.now() + timedelta(minutes=3), _recorder("c"))
        clock.advance(minutes=5)
        await scheduler.run_due()
        assert order == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_job_leaves_pending_set_before_callback(self, scheduler, clock):
        seen = {}

        async def _callback():
            seen["pending"] = scheduler.list_jobs()
            seen["cancel"] = scheduler.cancel("1")

        scheduler.schedule("1", clock.now() + timedelta(minutes=1), _callback)
        clock.advance(minutes=2)
        await scheduler.run_due()
        assert seen == {"pending": set(), "cancel": False}

    @pytest.mark.asyncio
    async def test_callback_can_schedule_follow_up(self, scheduler, clock):
        follow_up = AsyncMock()

        async def _callback():
            assert scheduler.schedule("2", clock.now() + timedelta(minutes=1), follow_up)

        scheduler.schedule("1", clock.now() + timedelta(minutes=1), _callback)
        clock.advance(minutes=2)
        await scheduler.run_due()
        assert scheduler.list_jobs() == {"2"}

        clock.advance(minutes=2)
        await scheduler.run_due()
        follow_up.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_callback_is_logged_and_swallowed(self, scheduler, clock, caplog):
        ok = AsyncMock()
        scheduler.schedule("bad", clock.now() + timedelta(minutes=1),
                           AsyncMock(side_effect=RuntimeError("boom")))
        scheduler.schedule("good", clock.now() + timedelta(minutes=1), ok)
        clock.advance(minutes=2)

        with caplog.at_level(logging.ERROR, logger="edubot.core.job_scheduler"):
            assert await scheduler.run_due() == 2

        ok.assert_awaited_once()
        assert "Job bad callback failed" in caplog.text
        assert scheduler.schedule("bad", clock.now() + timedelta(minutes=1), AsyncMock()) is False


class TestShutdown:
    def test_cancel_all_closes_scheduler(self, scheduler, clock):
        scheduler.schedule("1", clock.now() + timedelta(minutes=1), AsyncMock())
        scheduler.schedule("2", clock.now() + timedelta(minutes=2), AsyncMock())

        assert scheduler.cancel_all() == 2
        assert scheduler.closed is True
        assert scheduler.list_jobs() == set()
        assert scheduler.schedule("3", clock.now() + timedelta(minutes=1), AsyncMock()) is False

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending(self, scheduler, clock):
        callback = AsyncMock()
        scheduler.start(MagicMock())
        scheduler.schedule("1", clock.now() + timedelta(hours=1), callback)
        await scheduler.shutdown()

        clock.advance(hours=2)
        assert await scheduler.run_due() == 0
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_cannot_restart_after_shutdown(self, clock):
        scheduler = JobScheduler(clock)
        await scheduler.shutdown()
        with pytest.raises(RuntimeError):
            scheduler.start(MagicMock())


# ---------------------------------------------------------------------------
# Job queue timers
# ---------------------------------------------------------------------------


def _timer_context(job_id):
    context = MagicMock()
    context.job.data = job_id
    return context


async def _fire_timer(job_queue, job_id):
    """Run the run_once callback registered for `job_id`, as the job queue would."""
    for call in job_queue.run_once.call_args_list:
        if call.kwargs["name"] == job_id:
            await call.args[0](_timer_context(job_id))
            return
    raise AssertionError(f"no timer armed for job {job_id}")


class TestJobQueueTimers:
    def test_start_arms_jobs_scheduled_earlier(self, scheduler, clock):
        fire_at = clock.now() + timedelta(minutes=5)
        scheduler.schedule("1", fire_at, AsyncMock())
        job_queue = MagicMock()

        scheduler.start(job_queue)

        job_queue.run_once.assert_called_once()
        call = job_queue.run_once.call_args
        assert call.kwargs["when"] == fire_at
        assert call.kwargs["name"] == "1"
        assert call.kwargs["data"] == "1"

    def test_schedule_after_start_arms_timer(self, scheduler, clock):
        job_queue = MagicMock()
        scheduler.start(job_queue)
        scheduler.schedule("7", clock.now() + timedelta(minutes=5), AsyncMock())
        assert job_queue.run_once.call_args.kwargs["name"] == "7"

    def test_rejected_job_is_not_armed(self, scheduler, clock):
        job_queue = MagicMock()
        scheduler.start(job_queue)
        scheduler.schedule("1", clock.now(), AsyncMock())
        job_queue.run_once.assert_not_called()

    @pytest.mark.asyncio
    async def test_timer_fires_job_once(self, scheduler, clock):
        callback = AsyncMock()
        job_queue = MagicMock()
        scheduler.start(job_queue)
        scheduler.schedule("1", clock.now() + timedelta(minutes=5), callback)

        await _fire_timer(job_queue, "1")
        await _fire_timer(job_queue, "1")

        callback.assert_awaited_once()
        assert scheduler.list_jobs() == set()
        assert scheduler.schedule("1", clock.now() + timedelta(minutes=5), AsyncMock()) is False

    def test_cancel_removes_timer(self, scheduler, clock):
        job_queue = MagicMock()
        scheduler.start(job_queue)
        scheduler.schedule("1", clock.now() + timedelta(minutes=5), AsyncMock())

        assert scheduler.cancel("1") is True
        job_queue.run_once.return_value.schedule_removal.assert_called_once()

    @pytest.mark.asyncio
    async def test_timer_for_cancelled_job_does_nothing(self, scheduler, clock):
        callback = AsyncMock()
        job_queue = MagicMock()
        scheduler.start(job_queue)
        scheduler.schedule("1", clock.now() + timedelta(minutes=5), callback)
        scheduler.cancel("1")

        await _fire_timer(job_queue, "1")
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_running_callbacks(self, scheduler, clock):
        release = asyncio.Event()
        finished = []

        async def _slow():
            await release.wait()
            finished.append(True)

        job_queue = MagicMock()
        scheduler.start(job_queue)
        scheduler.schedule("slow", clock.now() + timedelta(seconds=1), _slow)
        firing = asyncio.create_task(_fire_timer(job_queue, "slow"))
        await asyncio.sleep(0.01)
        assert scheduler.list_jobs() == set()

        shutdown = asyncio.create_task(scheduler.shutdown())
        await asyncio.sleep(0.05)
        assert not shutdown.done()
        release.set()
        await shutdown
        await firing
        assert finished == [True]
