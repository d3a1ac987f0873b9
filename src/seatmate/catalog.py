"""Area, period and seat catalog on top of the raw library API.

The area listing comes back in several shapes depending on the provider
version. Each known shape is a model below; ``parse_area_listing`` tries them
in a fixed order and fails loudly if none fits.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError, field_validator

from seatmate.api import LibraryApiClient, as_int
from seatmate.errors import CatalogError
from seatmate.models import Area, AreaRef, Period, Seat, SeatStatus, clock_minutes

logger = logging.getLogger(__name__)


# --- Raw payload models ---


class RawPeriod(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(alias="bookTimeId")
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _to_clock(cls, v: Any) -> str:
        # "08:00", "08:00:00" or a full "2026-10-18 08:00:00"
        text = str(v).strip().rsplit(" ", 1)[-1]
        parts = text.split(":")
        if len(parts) == 3:
            text = ":".join(parts[:2])
        minutes = clock_minutes(text)
        return f"{minutes // 60:02d}:{minutes % 60:02d}"


class RawArea(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str | None = None
    area_name: str | None = None
    parent_id: int = Field(default=0, alias="parentId")
    total_count: int | None = Field(default=None, alias="TotalCount")
    unavailable: int | None = Field(default=None, alias="UnavailableSpace")
    status: int | None = None
    area_times: Any = None

    def periods(self) -> tuple[Period, ...]:
        # area_times.data.list; anything else means "no periods"
        try:
            rows = self.area_times["data"]["list"]
        except (KeyError, TypeError):
            return ()
        periods = []
        for row in rows or []:
            try:
                raw = RawPeriod.model_validate(row)
            except ValidationError:
                logger.debug("Skipping malformed period row: %s", row)
                continue
            periods.append(Period(id=raw.id, start_time=raw.start_time, end_time=raw.end_time))
        return tuple(periods)

    def to_area(self) -> Area:
        total = self.total_count if self.total_count is not None else 1
        if self.unavailable is not None:
            free = total - self.unavailable
        else:
            free = 1 if self.status == SeatStatus.BOOKABLE else 0
        return Area(
            id=self.id,
            name=self.area_name or self.name or "unknown area",
            parent_id=self.parent_id,
            free_seats=free,
            total_seats=total,
            periods=self.periods(),
        )


class SeatInfoListing(BaseModel):
    """``data.list = {"seatinfo": [...]}``, current provider."""

    seatinfo: list[RawArea]

    def areas(self) -> list[Area]:
        return [a.to_area() for a in self.seatinfo]


class ChildAreaListing(BaseModel):
    """``data.list = {"childArea": [...]}``, older provider."""

    child_area: list[RawArea] = Field(alias="childArea")

    def areas(self) -> list[Area]:
        return [a.to_area() for a in self.child_area]


class _SeatRow(BaseModel):
    id: int
    area_name: str
    area: int | None = None
    status: int = 0


class SeatRowListing(RootModel[list[_SeatRow]]):
    """``data.list = [seat, ...]`` where rows carry ``area_name``; grouped into areas."""

    @field_validator("root")
    @classmethod
    def _not_empty(cls, v: list[_SeatRow]) -> list[_SeatRow]:
        if not v:
            raise ValueError("empty seat row listing")
        return v

    def areas(self) -> list[Area]:
        grouped: dict[str, list[_SeatRow]] = defaultdict(list)
        for row in self.root:
            grouped[row.area_name].append(row)
        return [
            Area(
                id=rows[0].area or 0,
                name=name,
                free_seats=sum(1 for r in rows if r.status == SeatStatus.BOOKABLE),
                total_seats=len(rows),
            )
            for name, rows in grouped.items()
        ]


class AreaArrayListing(RootModel[list[RawArea]]):
    """``data.list = [area, ...]``."""

    def areas(self) -> list[Area]:
        return [a.to_area() for a in self.root]


_LISTING_VARIANTS: tuple[type[BaseModel], ...] = (
    SeatInfoListing,
    ChildAreaListing,
    SeatRowListing,
    AreaArrayListing,
)


def parse_area_listing(listing: Any) -> list[Area]:
    """Parse ``data.list`` of an area response into areas."""
    for variant in _LISTING_VARIANTS:
        try:
            parsed = variant.model_validate(listing)
        except ValidationError:
            continue
        logger.debug("Area listing parsed as %s", variant.__name__)
        return parsed.areas()
    raise CatalogError("Unrecognised area listing: data.list matches no known shape")


class RawSeat(BaseModel):
    id: int
    name: str | int | None = None
    no: str | int | None = None
    status: int = 0
    status_name: str = ""

    @property
    def display_name(self) -> str:
        for value in (self.name, self.no):
            if value is not None and str(value) != "":
                return str(value)
        return str(self.id)


class SeatListing(BaseModel):
    seats: list[RawSeat] = Field(alias="list")


def _unwrap(envelope: dict[str, Any], what: str) -> Any:
    if as_int(envelope.get("status")) != 1:
        raise CatalogError(f"Fetching {what} failed: {envelope.get('msg') or 'no message'}")
    return envelope.get("data")


# --- Pure helpers over a fetched area list ---


def resolve_area(areas: list[Area], library: str, area_name: str) -> Area:
    """Find ``<library>-<area_name>`` in a flat area list."""
    lib = next((a for a in areas if a.parent_id == 0 and a.name == library), None)
    if lib is not None:
        match = next(
            (a for a in areas if a.parent_id == lib.id and a.name == area_name), None
        )
        if match is not None:
            return match
    # Some listing shapes lose the parent link
    match = next((a for a in areas if a.name == area_name), None)
    if match is not None:
        logger.info("Area %s resolved without library %s", area_name, library)
        return match
    raise CatalogError(f"Area {library}-{area_name} not found, check the area setting")


def child_areas(areas: list[Area], parent: Area) -> list[Area]:
    return [a for a in areas if a.parent_id == parent.id and a.id != parent.id]


def periods_for(area: Area, children: list[Area]) -> list[Period]:
    """Periods of an area: those of its first child that lists any, else its own."""
    for child in children:
        if child.periods:
            return list(child.periods)
    return list(area.periods)


class SeatCatalog:
    """Fetches areas, periods and seats, translating failures into CatalogError."""

    def __init__(self, client: LibraryApiClient) -> None:
        self.client = client

    async def list_areas(self, day: str) -> list[Area]:
        try:
            envelope = await self.client.get_areas(day)
        except (httpx.HTTPError, ValueError) as e:
            raise CatalogError(f"Fetching area listing failed: {e}") from e
        data = _unwrap(envelope, "area listing")
        if not isinstance(data, dict) or "list" not in data:
            raise CatalogError("Area listing has no data.list")
        return parse_area_listing(data["list"])

    async def list_periods(self, area: Area, day: str) -> list[Period]:
        areas = await self.list_areas(day)
        return periods_for(area, child_areas(areas, area))

    async def list_seats(
        self, area: Area | AreaRef, period: Period | None, day: str
    ) -> list[Seat]:
        try:
            envelope = await self.client.get_seats(area.id, period, day)
        except (httpx.HTTPError, ValueError) as e:
            raise CatalogError(f"Fetching seats of {area.name} failed: {e}") from e
        data = _unwrap(envelope, f"seats of {area.name}")
        try:
            listing = SeatListing.model_validate(data)
        except ValidationError as e:
            raise CatalogError(f"Seat listing of {area.name} is malformed: {e}") from e

        ref = AreaRef(id=area.id, name=area.name)
        period_id = period.id if period is not None else 0
        seats = [
            Seat(
                id=raw.id,
                name=raw.display_name,
                status=raw.status,
                status_name=raw.status_name,
                area=ref,
                period_id=period_id,
            )
            for raw in listing.seats
        ]
        logger.info("Fetched %d seats of %s", len(seats), area.name)
        return seats
