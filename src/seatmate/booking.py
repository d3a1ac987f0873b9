"""Per-period booking: pick one candidate seat, book it, classify the reply."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from seatmate.classifier import classify_reply
from seatmate.context import RunContext
from seatmate.errors import BookingError
from seatmate.models import (
    NO_BOOKABLE_PREFERRED_SEAT,
    NO_BOOKABLE_SEAT,
    AreaSnapshot,
    BookingAttemptResult,
    Outcome,
    Period,
    PeriodResult,
    Seat,
    SessionState,
    describe_status,
)
from seatmate.notifications import Notifier, booking_success_message
from seatmate.session import SessionGuard

logger = logging.getLogger(__name__)


class BookingProvider(Protocol):
    async def book(
        self, seat: Seat, period: Period, day: str, session: SessionState
    ) -> tuple[int, str]: ...

    async def validate_session(self, session: SessionState) -> bool: ...


def select_candidate(snapshot: AreaSnapshot, only_preferred: bool) -> Seat | None:
    """First bookable preferred seat; else, unless only_preferred, first bookable seat in the area."""
    for seat in snapshot.preferred:
        if seat.bookable:
            return seat
    if only_preferred:
        return None
    for seat in snapshot.all_seats:
        if seat.bookable:
            return seat
    return None


class BookingEngine:
    """
    Books at most one seat per period per pass.

    Requests are never issued concurrently: hammering the provider with
    parallel bookings is what gets a user rate limited.
    """

    def __init__(
        self,
        ctx: RunContext,
        guard: SessionGuard,
        provider: BookingProvider,
        notifier: Notifier | None = None,
    ) -> None:
        self.ctx = ctx
        self.guard = guard
        self.provider = provider
        self.notifier = notifier

    async def attempt_period(
        self, snapshot: AreaSnapshot, period_id: int, only_preferred: bool
    ) -> PeriodResult:
        period = snapshot.period
        bookable = sum(1 for s in snapshot.preferred if s.bookable)
        logger.info(
            "Booking %s %s: %d/%d preferred seats bookable",
            self.ctx.day,
            period.label,
            bookable,
            len(snapshot.preferred),
        )
        for seat in snapshot.preferred:
            if not seat.bookable:
                logger.debug("Preferred seat %s is %s", seat.label, describe_status(seat.status))

        seat = select_candidate(snapshot, only_preferred)
        if seat is None:
            if only_preferred:
                logger.info("%s: no preferred seat bookable and only mode is on", period.label)
                return PeriodResult(
                    period_id=period_id, success=False, reason=NO_BOOKABLE_PREFERRED_SEAT
                )
            logger.info("%s: no bookable seat in area", period.label)
            return PeriodResult(period_id=period_id, success=False, reason=NO_BOOKABLE_SEAT)

        if seat not in snapshot.preferred:
            logger.info("%s: preferred seats unavailable, falling back to %s", period.label, seat.label)
        else:
            logger.info("%s: trying seat %s", period.label, seat.label)

        attempt = await self._book(seat, period)
        outcome = attempt.outcome
        logger.info("Seat %s classified as %s: %s", seat.label, outcome.value, attempt.raw_message)

        if outcome is Outcome.SUCCESS:
            logger.info("Booked %s for %s %s", seat.label, self.ctx.day, period.label)
            if self.notifier is not None:
                self.notifier.notify(*booking_success_message(self.ctx.day, period, seat))
        elif outcome is Outcome.NEED_REAUTH:
            self.guard.invalidate(attempt.raw_message)
        elif outcome is Outcome.ALREADY_BOOKED:
            logger.info("Seat %s was taken by someone else", seat.label)
        elif outcome is Outcome.NOT_YET_BOOKABLE:
            logger.info("Seat %s cannot be booked right now (window not open or closed)", seat.label)

        return PeriodResult(
            period_id=period_id,
            success=outcome is Outcome.SUCCESS,
            outcome=outcome,
            seat=seat,
            message=attempt.raw_message,
        )

    async def _book(self, seat: Seat, period: Period) -> BookingAttemptResult:
        session = self.guard.current
        if session is None:
            return BookingAttemptResult(outcome=Outcome.NEED_REAUTH, raw_message="no session")

        async with self.guard.hold():
            if self.ctx.config.validate_before_book and not await self.provider.validate_session(session):
                return BookingAttemptResult(
                    outcome=Outcome.NEED_REAUTH, raw_message="session rejected, re-login required"
                )
            try:
                status, msg = await self.provider.book(seat, period, self.ctx.day, session)
            except (BookingError, httpx.HTTPError) as e:
                logger.error("Booking %s failed: %s", seat.label, e)
                return BookingAttemptResult(outcome=Outcome.UNKNOWN_FAILURE, raw_message=str(e))
        return classify_reply(status, msg)
