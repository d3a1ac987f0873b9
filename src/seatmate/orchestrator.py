"""Bounded retry loop around full booking passes.

One pass = make sure the session is valid, make sure inventory is loaded,
then try every still-unbooked period once, in order. Passes repeat with a
fixed pause until everything is booked, the provider rate-limits us, only
mode makes further passes pointless, or the budget runs out.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable

from seatmate.booking import BookingEngine
from seatmate.context import RunContext
from seatmate.errors import AuthError, CatalogError
from seatmate.inventory import InventoryFetcher
from seatmate.models import (
    NO_BOOKABLE_PREFERRED_SEAT,
    Outcome,
    PeriodResult,
    RunResult,
    RunState,
)
from seatmate.notifications import Notifier, run_failure_message, warm_up_failure_message
from seatmate.session import SessionGuard

logger = logging.getLogger(__name__)

# Pause between early-login attempts
LOGIN_RETRY_PAUSE_SECONDS = 1.0


class PassOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    RATE_LIMITED = "rate_limited"
    ONLY_PREFERRED_EXHAUSTED = "only_preferred_exhausted"


class RetryOrchestrator:
    """
    Runs the day's booking as a sequence of passes:

    Idle → Attempting → Success
                      → Retrying (sleep interval, next pass)
                      → Aborted (rate limited / only mode exhausted)

    At most ``max_attempts + 1`` passes run. A single failure notification
    goes out at the end if no pass booked every period.
    """

    def __init__(
        self,
        ctx: RunContext,
        guard: SessionGuard,
        fetcher: InventoryFetcher,
        engine: BookingEngine,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.ctx = ctx
        self.guard = guard
        self.fetcher = fetcher
        self.engine = engine
        self.notifier = notifier
        self._clock = clock or (lambda: datetime.now(ctx.config.tz))
        self._sleep = sleep
        self._booked: list[PeriodResult] = []

    async def refresh_inventory(self) -> None:
        snapshots = await self.fetcher.fetch(self.ctx.config.area, self.ctx.day)
        self.ctx.replace_snapshots(snapshots)

    async def prepare(self) -> None:
        """Log in if needed and load inventory. Raises AuthError / CatalogError."""
        await self.guard.ensure_valid()
        await self.refresh_inventory()

    async def warm_up(self, deadline: datetime) -> bool:
        """Pre-refresh before the trigger: keep trying to log in and fetch until ``deadline``."""
        config = self.ctx.config
        logger.info(
            "Early login: up to %d attempts before %s",
            config.max_login_attempts,
            deadline.isoformat(timespec="milliseconds"),
        )
        self.ctx.begin_day(deadline)
        attempts = 0
        errors: list[str] = []
        while attempts < config.max_login_attempts and self._clock() < deadline:
            attempts += 1
            try:
                await self.prepare()
            except (AuthError, CatalogError) as e:
                logger.error("Early login attempt %d failed: %s", attempts, e)
                errors.append(f"attempt {attempts}: {e}")
                await self._sleep(LOGIN_RETRY_PAUSE_SECONDS)
                continue
            logger.info("Early login succeeded, ready to book at %s", deadline.isoformat(timespec="seconds"))
            return True

        logger.warning("Early login gave up after %d attempts, will retry at booking time", attempts)
        if self.notifier is not None:
            self.notifier.notify(
                *warm_up_failure_message(
                    attempts,
                    config.max_login_attempts,
                    deadline.isoformat(timespec="seconds"),
                    errors,
                )
            )
        return False

    async def run(
        self, max_attempts: int | None = None, interval: float | None = None
    ) -> RunResult:
        """Book every active period of today's target date."""
        config = self.ctx.config
        max_attempts = config.max_attempts if max_attempts is None else max_attempts
        interval = config.retry_interval if interval is None else interval

        self.ctx.begin_day(self._clock())
        self._booked = []
        start = time.monotonic()
        state = RunState.EXHAUSTED
        last_error: str | None = None
        passes = 0

        logger.info(
            "Booking run for %s: up to %d passes, %.1fs apart",
            self.ctx.day,
            max_attempts + 1,
            interval,
        )
        for attempt in range(max_attempts + 1):
            passes += 1
            outcome, error = await self._run_pass(passes, max_attempts + 1)
            if error:
                last_error = error

            if outcome is PassOutcome.SUCCESS:
                state = RunState.SUCCESS
                break
            if outcome is PassOutcome.RATE_LIMITED:
                logger.error("Rate limited by the provider, giving up for today")
                state = RunState.ABORTED
                break
            if outcome is PassOutcome.ONLY_PREFERRED_EXHAUSTED:
                logger.error("%s, giving up for today", error)
                state = RunState.ABORTED
                break

            if attempt < max_attempts:
                # Stale seat statuses are useless for the next pass; the last
                # pass keeps its snapshots for the failure notice
                self.ctx.clear_snapshots()
                logger.info(
                    "Pass %d/%d failed, retrying in %.1fs", passes, max_attempts + 1, interval
                )
                await self._sleep(interval)

        elapsed = time.monotonic() - start
        success = state is RunState.SUCCESS
        result = RunResult(
            state=state,
            success=success,
            passes=passes,
            elapsed_seconds=elapsed,
            booked=list(self._booked),
            error=None if success else (last_error or "all passes failed"),
        )
        if success:
            logger.info("All periods booked after %d passes (%.2fs)", passes, elapsed)
        else:
            logger.error("Booking run %s after %d passes: %s", state.value, passes, result.error)
            if self.notifier is not None:
                self.notifier.notify(
                    *run_failure_message(
                        self.ctx.day,
                        result,
                        self.ctx.snapshots,
                        self.ctx.pending,
                        config.only,
                    )
                )
        return result

    async def _run_pass(self, number: int, total: int) -> tuple[PassOutcome, str | None]:
        logger.info("Pass %d/%d", number, total)
        try:
            await self.guard.ensure_valid()
        except AuthError as e:
            logger.error("Pass %d: login failed: %s", number, e)
            return PassOutcome.RETRY, str(e)

        if not self.ctx.snapshots:
            try:
                await self.refresh_inventory()
            except CatalogError as e:
                logger.error("Pass %d: inventory fetch failed: %s", number, e)
                return PassOutcome.RETRY, str(e)

        only = self.ctx.config.only
        results: list[PeriodResult] = []
        for period_id in self.ctx.pending:
            snapshot = self.ctx.snapshots.get(period_id)
            if snapshot is None:
                continue
            result = await self.engine.attempt_period(snapshot, period_id, only)
            results.append(result)
            self.ctx.mark(period_id, result.success)
            if result.success:
                self._booked.append(result)
            elif result.outcome is Outcome.RATE_LIMITED:
                return PassOutcome.RATE_LIMITED, f"rate limited: {result.message}"
            elif result.outcome is Outcome.NEED_REAUTH:
                return PassOutcome.RETRY, f"session rejected: {result.message}"

        if self.ctx.all_succeeded:
            return PassOutcome.SUCCESS, None
        if only and results and all(r.reason == NO_BOOKABLE_PREFERRED_SEAT for r in results):
            return (
                PassOutcome.ONLY_PREFERRED_EXHAUSTED,
                "all preferred seats are unavailable and only mode is on",
            )
        failed = [r for r in results if not r.success]
        summary = "; ".join(
            f"{self.ctx.snapshots[r.period_id].period.label}: {r.reason or (r.outcome.value if r.outcome else 'failed')}"
            for r in failed
            if r.period_id in self.ctx.snapshots
        )
        return PassOutcome.RETRY, summary or None
