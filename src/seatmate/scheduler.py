"""Daily trigger scheduling with precision timing.

- Fixed-rate anchor: the n-th trigger is ``anchor + n days``, so run time
  never pushes later triggers back
- Optional pre-refresh ``lead_minutes`` before every trigger
- Two-phase timing: coarse asyncio.sleep + busy-wait spin for sub-ms precision
- Non-blocking NTP check via asyncio.to_thread
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, tzinfo
from datetime import time as clock_time
from typing import Awaitable, Callable

import ntplib

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)
NTP_SERVER = "pool.ntp.org"
SHUTDOWN_GRACE_SECONDS = 60.0

Job = Callable[[datetime], Awaitable[object]]


class DailyScheduler:
    """
    Fires a job once a day at a fixed wall-clock time.

    Two-phase wait per trigger:
    1. asyncio.sleep() until T-2s (efficient, no CPU burn)
    2. Busy-wait on time.monotonic() for sub-ms precision

    Jobs (pre-refresh and booking) run under one lock, so two of them never
    overlap. A cycle whose trigger has already passed is skipped, never run
    late.
    """

    def __init__(
        self,
        trigger_time: clock_time,
        tz: tzinfo,
        lead_minutes: int = 0,
        pre_wake_seconds: float = 2.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.trigger_time = trigger_time
        self.tz = tz
        self.lead = timedelta(minutes=lead_minutes)
        self.pre_wake_seconds = pre_wake_seconds
        self._clock = clock or (lambda: datetime.now(tz))
        self._ntp_offset: float | None = None
        self._lock = asyncio.Lock()
        self._current: asyncio.Task | None = None
        self._stopping = False

    @property
    def running_job(self) -> asyncio.Task | None:
        return self._current

    def next_trigger(self, now: datetime | None = None) -> datetime:
        """Today's trigger, or tomorrow's if today's has already passed.

        Example: trigger 06:02, now 2026-03-10 07:00 → 2026-03-11 06:02
        """
        now = (now or self._clock()).astimezone(self.tz)
        candidate = datetime.combine(now.date(), self.trigger_time, tzinfo=self.tz)
        if candidate < now:
            candidate += DAY
        return candidate

    def pre_refresh_instant(self, trigger: datetime) -> datetime | None:
        if self.lead <= timedelta(0):
            return None
        return trigger - self.lead

    async def wait_until(self, target: datetime, pre_wake_seconds: float | None = None) -> None:
        """Sleep until target time, then busy-wait for precision."""
        if pre_wake_seconds is None:
            pre_wake_seconds = self.pre_wake_seconds
        now = self._clock()
        total_wait = (target - now).total_seconds()

        if total_wait <= 0:
            logger.info("Target time already passed (%.1fs ago)", -total_wait)
            return

        logger.info("Waiting %.1fs until %s", total_wait, target.isoformat(timespec="milliseconds"))

        # Phase 1: Coarse sleep
        coarse_sleep = max(0, total_wait - pre_wake_seconds)
        if coarse_sleep > 0:
            await asyncio.sleep(coarse_sleep)

        # Phase 2: Busy-wait
        remaining = (target - self._clock()).total_seconds()
        if remaining <= 0:
            return

        target_mono = time.monotonic() + remaining
        while time.monotonic() < target_mono:
            pass

    def check_ntp_offset(self) -> float | None:
        """Check system clock offset against NTP. Returns seconds offset or None.

        BLOCKING, use check_ntp_offset_async() in async contexts.
        """
        try:
            resp = ntplib.NTPClient().request(NTP_SERVER, version=3)
        except (ntplib.NTPException, OSError) as e:
            logger.warning("NTP check failed: %s", e)
            return None
        self._ntp_offset = resp.offset
        return resp.offset

    async def check_ntp_offset_async(self) -> float | None:
        """Non-blocking NTP check, run in a worker thread."""
        return await asyncio.to_thread(self.check_ntp_offset)

    def compensate(self, target: datetime) -> datetime:
        """Shift a wall-clock target by the measured NTP offset."""
        offset = self._ntp_offset or 0.0
        if offset != 0.0:
            logger.debug("Clock compensation: %.1fms", offset * 1000)
            return target - timedelta(seconds=offset)
        return target

    async def run_forever(
        self,
        job: Job,
        pre_refresh: Job | None = None,
        max_cycles: int | None = None,
    ) -> None:
        """Run ``job`` at every daily trigger until shut down.

        Both callables receive the trigger datetime of their cycle.
        """
        anchor = self.next_trigger()
        logger.info("Scheduler armed, first trigger at %s", anchor.isoformat(timespec="milliseconds"))
        n = 0
        cycles = 0
        while not self._stopping and (max_cycles is None or cycles < max_cycles):
            trigger = anchor + n * DAY
            now = self._clock()
            if trigger < now:
                skipped = 0
                while anchor + n * DAY < now:
                    n += 1
                    skipped += 1
                logger.warning(
                    "Skipped %d missed trigger(s), next at %s",
                    skipped,
                    (anchor + n * DAY).isoformat(timespec="seconds"),
                )
                continue

            instant = self.pre_refresh_instant(trigger)
            if pre_refresh is not None and instant is not None:
                if instant > now:
                    await self.wait_until(instant, pre_wake_seconds=0)
                    if self._stopping:
                        break
                    await self._execute("pre-refresh", pre_refresh, trigger)
                else:
                    logger.info(
                        "Pre-refresh time %s already passed, skipping it this cycle",
                        instant.isoformat(timespec="seconds"),
                    )

            if self._stopping:
                break
            await self.wait_until(self.compensate(trigger))
            if self._stopping:
                break
            await self._execute("booking", job, trigger)
            cycles += 1
            n += 1
            logger.info("Next trigger at %s", (anchor + n * DAY).isoformat(timespec="seconds"))

    async def _execute(self, name: str, job: Job, trigger: datetime) -> None:
        async with self._lock:
            logger.info("Running %s for trigger %s", name, trigger.isoformat(timespec="seconds"))
            self._current = asyncio.create_task(job(trigger))
            try:
                await self._current
            except asyncio.CancelledError:
                if not self._stopping:
                    raise
                logger.warning("%s cancelled during shutdown", name)
            except Exception:
                logger.exception("%s failed", name)
            finally:
                self._current = None

    async def shutdown(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Stop arming new cycles; give a running job ``grace_seconds`` before cancelling it."""
        self._stopping = True
        task = self._current
        if task is None or task.done():
            return
        logger.info("Waiting up to %.0fs for the running job to finish", grace_seconds)
        done, _ = await asyncio.wait({task}, timeout=grace_seconds)
        if not done:
            logger.warning("Job still running after %.0fs, cancelling it", grace_seconds)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
