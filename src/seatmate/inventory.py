"""Concurrent seat-inventory acquisition for every active period."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, TypeVar

from seatmate.catalog import SeatCatalog, child_areas, periods_for, resolve_area
from seatmate.errors import CatalogError
from seatmate.models import Area, AreaSnapshot, BookingWindow, Period, SeatConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Used when an area lists no periods at all
DEFAULT_PERIOD = Period(id=0, start_time="08:00", end_time="22:30")


def default_workers() -> int:
    return 2 * (os.cpu_count() or 1)


def active_periods(periods: list[Period], window: BookingWindow) -> list[Period]:
    """Periods whose [start, end) intersects the booking window."""
    active = []
    for p in periods:
        try:
            overlaps = window.overlaps(p.start_time, p.end_time)
        except ValueError as e:
            raise CatalogError(f"Malformed period {p.label}: {e}") from e
        if overlaps:
            active.append(p)
    return active


def _matching_period(area: Area, reference: Period, index: int) -> Period:
    """The area's own period for the reference period (same times, else same position)."""
    for p in area.periods:
        if p.start_time == reference.start_time and p.end_time == reference.end_time:
            return p
    if index < len(area.periods):
        return area.periods[index]
    return reference


class InventoryFetcher:
    """
    Fetches, per active period, the preferred seats and every seat of the
    configured area.

    One task per period runs concurrently (bounded by a worker semaphore);
    ``fetch`` only returns once every task has finished. Each provider call
    gets its own timeout and retry budget, so one slow period cannot stall
    the others beyond that budget.
    """

    def __init__(
        self,
        catalog: SeatCatalog,
        config: SeatConfig,
        workers: int | None = None,
    ) -> None:
        self.catalog = catalog
        self.config = config
        self._semaphore = asyncio.Semaphore(workers or default_workers())

    async def _with_retry(self, call: Callable[[], Awaitable[T]], what: str) -> T:
        attempts = self.config.fetch.retries + 1
        timeout = self.config.fetch.timeout_seconds
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(call(), timeout)
            except asyncio.TimeoutError:
                last_error = CatalogError(f"{what}: timed out after {timeout:.0f}s")
            except CatalogError as e:
                last_error = e
            logger.warning("Fetching %s failed (%d/%d): %s", what, attempt, attempts, last_error)
        assert last_error is not None
        raise CatalogError(str(last_error)) from last_error

    async def fetch(self, area: str, day: str) -> dict[int, AreaSnapshot]:
        """Snapshot every active period of ``<library>-<area>`` on ``day``.

        Raises CatalogError if the area cannot be resolved, no period overlaps
        the booking window, or any period comes back without seats.
        """
        library, _, area_name = area.partition("-")
        areas = await self._with_retry(lambda: self.catalog.list_areas(day), "area listing")
        target = resolve_area(areas, library, area_name)
        children = child_areas(areas, target)

        periods = periods_for(target, children)
        if not periods:
            logger.warning("%s lists no periods, using %s", target.name, DEFAULT_PERIOD.label)
            periods = [DEFAULT_PERIOD]
        active = active_periods(periods, self.config.window)
        if not active:
            raise CatalogError(
                f"No period of {target.name} overlaps booking window {self.config.window}"
            )
        logger.info(
            "Active periods on %s: %s", day, ", ".join(p.label for p in active)
        )

        candidates = {a.name: a for a in (target, *children)}
        tasks = [
            self._fetch_period(period, periods.index(period), candidates, target, day)
            for period in active
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        snapshots: dict[int, AreaSnapshot] = {}
        failures: list[str] = []
        for period, result in zip(active, results):
            if isinstance(result, CatalogError):
                failures.append(str(result))
            elif isinstance(result, BaseException):
                raise result
            else:
                snapshots[period.id] = result
        if failures:
            raise CatalogError("; ".join(failures))
        return snapshots

    async def _fetch_period(
        self,
        period: Period,
        index: int,
        candidates: dict[str, Area],
        target: Area,
        day: str,
    ) -> AreaSnapshot:
        wanted = self.config.seats or {target.name: []}
        all_seats = []
        preferred = []
        async with self._semaphore:
            for area_name, seat_names in wanted.items():
                area = candidates.get(area_name)
                if area is None:
                    logger.warning("Area [%s] not found under %s, check the seats setting", area_name, target.name)
                    continue
                segment = _matching_period(area, period, index)
                seats = await self._with_retry(
                    lambda: self.catalog.list_seats(area, segment, day),
                    f"seats of {area_name} {period.label}",
                )
                all_seats.extend(seats)
                by_name = {s.name: s for s in seats}
                for name in seat_names:
                    seat = by_name.get(name)
                    if seat is None:
                        logger.warning("Seat [%s-%s] not found, check the seats setting", area_name, name)
                    else:
                        preferred.append(seat)

        if not all_seats:
            raise CatalogError(
                f"Period {period.label}: no seats found in any configured area, check the area setting"
            )
        if preferred:
            logger.info(
                "Period %s: %d preferred seats [%s], %d seats in area",
                period.label,
                len(preferred),
                ", ".join(s.label for s in preferred),
                len(all_seats),
            )
        else:
            logger.info(
                "Period %s: no preferred seats, will fall back to %d seats in area",
                period.label,
                len(all_seats),
            )
        return AreaSnapshot(period=period, preferred=tuple(preferred), all_seats=tuple(all_seats))
