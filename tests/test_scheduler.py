"""Tests for the daily trigger scheduler."""

import asyncio
import time as monotonic_time
from datetime import datetime, time, timedelta
from unittest.mock import AsyncMock, patch
from zoneinfo import ZoneInfo

import ntplib
import pytest

from seatmate.scheduler import DailyScheduler

SHANGHAI = ZoneInfo("Asia/Shanghai")
ANCHOR = datetime(2026, 10, 17, 6, 2, tzinfo=SHANGHAI)


def _scheduler(now: datetime, lead: int = 0):
    """Scheduler on a fake clock whose waits jump straight to the target."""
    clock = {"now": now}
    scheduler = DailyScheduler(time(6, 2), SHANGHAI, lead_minutes=lead, clock=lambda: clock["now"])

    async def fake_wait(target, pre_wake_seconds=None):
        clock["now"] = max(clock["now"], target)

    scheduler.wait_until = fake_wait
    return scheduler, clock


class TestNextTrigger:
    def setup_method(self):
        self.scheduler = DailyScheduler(time(6, 2, 30, 500000), SHANGHAI)

    def test_later_today(self):
        now = datetime(2026, 10, 17, 5, 0, tzinfo=SHANGHAI)
        expected = datetime(2026, 10, 17, 6, 2, 30, 500000, tzinfo=SHANGHAI)
        assert self.scheduler.next_trigger(now) == expected

    def test_already_passed_today(self):
        now = datetime(2026, 10, 17, 7, 0, tzinfo=SHANGHAI)
        expected = datetime(2026, 10, 18, 6, 2, 30, 500000, tzinfo=SHANGHAI)
        assert self.scheduler.next_trigger(now) == expected

    def test_exact_trigger_fires_today(self):
        now = datetime(2026, 10, 17, 6, 2, 30, 500000, tzinfo=SHANGHAI)
        assert self.scheduler.next_trigger(now) == now

    def test_other_timezone_input(self):
        # 22:00 UTC is 06:00 next day in Shanghai
        now = datetime(2026, 10, 16, 22, 0, tzinfo=ZoneInfo("UTC"))
        expected = datetime(2026, 10, 17, 6, 2, 30, 500000, tzinfo=SHANGHAI)
        assert self.scheduler.next_trigger(now) == expected

    def test_pre_refresh_instant(self):
        scheduler = DailyScheduler(time(6, 2), SHANGHAI, lead_minutes=5)
        assert scheduler.pre_refresh_instant(ANCHOR) == ANCHOR - timedelta(minutes=5)

    def test_pre_refresh_disabled(self):
        assert self.scheduler.pre_refresh_instant(ANCHOR) is None


class TestClockOffset:
    def setup_method(self):
        self.scheduler = DailyScheduler(time(6, 2), SHANGHAI)

    def test_compensate_without_offset(self):
        assert self.scheduler.compensate(ANCHOR) == ANCHOR

    @patch("seatmate.scheduler.ntplib.NTPClient")
    def test_ntp_offset_applied(self, mock_client):
        mock_client.return_value.request.return_value.offset = 0.25

        assert self.scheduler.check_ntp_offset() == 0.25
        assert self.scheduler.compensate(ANCHOR) == ANCHOR - timedelta(seconds=0.25)

    @patch("seatmate.scheduler.ntplib.NTPClient")
    def test_ntp_failure(self, mock_client):
        mock_client.return_value.request.side_effect = ntplib.NTPException("No response received")

        assert self.scheduler.check_ntp_offset() is None
        assert self.scheduler.compensate(ANCHOR) == ANCHOR


@pytest.mark.asyncio
class TestWaitUntil:
    async def test_past_target_returns_immediately(self):
        scheduler = DailyScheduler(time(6, 2), SHANGHAI)
        start = monotonic_time.monotonic()

        await scheduler.wait_until(datetime.now(SHANGHAI) - timedelta(seconds=5))

        assert monotonic_time.monotonic() - start < 0.1

    async def test_waits_until_target(self):
        scheduler = DailyScheduler(time(6, 2), SHANGHAI)
        target = datetime.now(SHANGHAI) + timedelta(milliseconds=80)

        await scheduler.wait_until(target, pre_wake_seconds=0.03)

        assert datetime.now(SHANGHAI) >= target

    @patch("seatmate.scheduler.ntplib.NTPClient")
    async def test_ntp_check_async(self, mock_client):
        mock_client.return_value.request.return_value.offset = -0.1
        scheduler = DailyScheduler(time(6, 2), SHANGHAI)

        assert await scheduler.check_ntp_offset_async() == -0.1


@pytest.mark.asyncio
class TestRunForever:
    async def test_fires_daily_at_anchor(self):
        scheduler, _ = _scheduler(datetime(2026, 10, 17, 5, 0, tzinfo=SHANGHAI), lead=5)
        job = AsyncMock()
        pre_refresh = AsyncMock()

        await scheduler.run_forever(job, pre_refresh, max_cycles=2)

        expected = [ANCHOR, ANCHOR + timedelta(days=1)]
        assert [c.args[0] for c in job.await_args_list] == expected
        assert [c.args[0] for c in pre_refresh.await_args_list] == expected

    async def test_late_pre_refresh_is_skipped(self):
        scheduler, _ = _scheduler(datetime(2026, 10, 17, 6, 0, tzinfo=SHANGHAI), lead=5)
        job = AsyncMock()
        pre_refresh = AsyncMock()

        await scheduler.run_forever(job, pre_refresh, max_cycles=1)

        pre_refresh.assert_not_awaited()
        job.assert_awaited_once_with(ANCHOR)

    async def test_missed_cycles_are_skipped(self):
        scheduler, clock = _scheduler(datetime(2026, 10, 17, 5, 0, tzinfo=SHANGHAI))

        async def slow_job(trigger):
            if trigger == ANCHOR:
                clock["now"] = ANCHOR + timedelta(days=2, hours=12)

        job = AsyncMock(side_effect=slow_job)

        await scheduler.run_forever(job, max_cycles=2)

        assert [c.args[0] for c in job.await_args_list] == [ANCHOR, ANCHOR + timedelta(days=3)]

    async def test_job_failure_does_not_stop_the_loop(self):
        scheduler, _ = _scheduler(datetime(2026, 10, 17, 5, 0, tzinfo=SHANGHAI))
        job = AsyncMock(side_effect=[RuntimeError("boom"), None])

        await scheduler.run_forever(job, max_cycles=2)

        assert job.await_count == 2

    async def test_jobs_never_overlap(self):
        scheduler = DailyScheduler(time(6, 2), SHANGHAI)
        running = 0
        peak = 0

        async def job(trigger):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        await asyncio.gather(
            scheduler._execute("pre-refresh", job, ANCHOR),
            scheduler._execute("booking", job, ANCHOR),
        )

        assert peak == 1


@pytest.mark.asyncio
class TestShutdown:
    async def test_running_job_finishes_within_grace(self):
        scheduler = DailyScheduler(time(6, 2), SHANGHAI)
        finished = asyncio.Event()

        async def job(trigger):
            await asyncio.sleep(0.05)
            finished.set()

        runner = asyncio.create_task(scheduler._execute("booking", job, ANCHOR))
        await asyncio.sleep(0.01)
        await scheduler.shutdown(grace_seconds=1)
        await runner

        assert finished.is_set()

    async def test_job_cancelled_after_grace(self):
        scheduler = DailyScheduler(time(6, 2), SHANGHAI)

        async def job(trigger):
            await asyncio.sleep(10)

        runner = asyncio.create_task(scheduler._execute("booking", job, ANCHOR))
        await asyncio.sleep(0.01)
        job_task = scheduler.running_job
        await scheduler.shutdown(grace_seconds=0.05)
        await runner

        assert job_task.cancelled()
        assert scheduler.running_job is None

    async def test_no_new_cycles_after_shutdown(self):
        scheduler, _ = _scheduler(datetime(2026, 10, 17, 5, 0, tzinfo=SHANGHAI))
        job = AsyncMock()

        await scheduler.shutdown()
        await scheduler.run_forever(job)

        job.assert_not_awaited()
