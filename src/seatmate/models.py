"""Pydantic models for configuration, provider data and run results."""

from __future__ import annotations

import re
from datetime import datetime, time
from enum import Enum, IntEnum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_TRIGGER_RE = re.compile(r"^\d{2}:\d{2}(:\d{2}(\.\d{3})?)?$")


def clock_minutes(value: str) -> int:
    """Minutes since midnight for an "HH:MM" string. "24:00" is allowed."""
    m = _CLOCK_RE.match(value.strip())
    if not m:
        raise ValueError(f"Expected HH:MM, got {value!r}")
    hours, minutes = int(m.group(1)), int(m.group(2))
    if minutes > 59 or hours > 24 or (hours == 24 and minutes != 0):
        raise ValueError(f"Clock value out of range: {value!r}")
    return hours * 60 + minutes


# --- Config Models ---


class BookingWindow(BaseModel):
    """Daily window of interest, e.g. 08:00-22:30."""

    model_config = ConfigDict(frozen=True)

    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _valid_clock(cls, v: str) -> str:
        clock_minutes(v)
        return v.strip()

    @classmethod
    def parse(cls, value: str) -> BookingWindow:
        start, sep, end = value.partition("-")
        if not sep:
            raise ValueError(f"Booking window must look like 08:00-22:30, got {value!r}")
        window = cls(start=start, end=end)
        if clock_minutes(window.start) >= clock_minutes(window.end):
            raise ValueError(f"Booking window {value!r} ends before it starts")
        return window

    def overlaps(self, start: str, end: str) -> bool:
        """True if [start, end) intersects this window."""
        left = max(clock_minutes(self.start), clock_minutes(start))
        right = min(clock_minutes(self.end), clock_minutes(end))
        return left < right

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


class FetchConfig(BaseModel):
    """Per-request timeout and retry budget for provider calls."""

    timeout_seconds: float = Field(default=10.0, gt=0)
    retries: int = Field(default=2, ge=0)


class KeepAliveConfig(BaseModel):
    enabled: bool = False
    interval_seconds: float = Field(default=30.0, gt=0)


class EmailConfig(BaseModel):
    """SMTP settings for booking notifications."""

    enable: bool = False
    smtp_host: str = ""
    smtp_port: int = 465
    username: str = ""
    password: SecretStr = SecretStr("")
    recipient_email: str = ""
    ssl_enable: bool = True

    @property
    def is_complete(self) -> bool:
        return bool(
            self.smtp_host
            and self.username
            and self.password.get_secret_value()
            and self.recipient_email
        )


class SeatConfig(BaseModel):
    """Loaded from YAML config file."""

    model_config = ConfigDict(populate_by_name=True)

    userid: str = Field(min_length=1)
    area: str = Field(min_length=1)  # "<library>-<area>"
    seats: dict[str, list[str]] = {}
    only: bool = False
    trigger_time: time = Field(default=time(6, 2), alias="time")
    window: BookingWindow = Field(
        default=BookingWindow(start="08:00", end="22:30"), alias="period"
    )
    max_attempts: int = Field(default=10, ge=0, alias="retry")
    retry_interval: float = 2.0
    delta: int = Field(default=0, ge=0)
    book_once: bool = False
    early_login_minutes: int = Field(default=5, ge=0)
    max_login_attempts: int = Field(default=50, ge=1)
    timezone: str = "Asia/Shanghai"
    validate_before_book: bool = True
    session_cookie: SecretStr | None = None
    fetch: FetchConfig = FetchConfig()
    keep_alive: KeepAliveConfig = KeepAliveConfig()
    email: EmailConfig = EmailConfig()

    @field_validator("area")
    @classmethod
    def _area_has_library(cls, v: str) -> str:
        library, sep, sub_area = v.partition("-")
        if not sep or not library or not sub_area:
            raise ValueError(f"area must look like '<library>-<area>', got {v!r}")
        return v

    @field_validator("trigger_time", mode="before")
    @classmethod
    def _parse_trigger_time(cls, v: object) -> object:
        if isinstance(v, int):
            # PyYAML reads unquoted 12:32 as a base-60 integer
            raise ValueError("time must be a quoted string such as '06:02:30.500'")
        if isinstance(v, str):
            if not _TRIGGER_RE.match(v.strip()):
                raise ValueError(f"time must be HH:mm[:ss[.SSS]], got {v!r}")
            return time.fromisoformat(v.strip())
        return v

    @field_validator("window", mode="before")
    @classmethod
    def _parse_window(cls, v: object) -> object:
        if isinstance(v, str):
            return BookingWindow.parse(v)
        return v

    @field_validator("retry_interval")
    @classmethod
    def _positive_interval(cls, v: float) -> float:
        return v if v > 0 else 30.0

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone {v!r}") from e
        return v

    @property
    def library_name(self) -> str:
        return self.area.partition("-")[0]

    @property
    def area_name(self) -> str:
        return self.area.partition("-")[2]

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# --- Provider Models ---


class SeatStatus(IntEnum):
    UNAVAILABLE = 0
    BOOKABLE = 1
    RESERVED = 2
    TEMPORARILY_AWAY = 3
    IN_USE = 4


_STATUS_LABELS = {
    SeatStatus.UNAVAILABLE: "unavailable",
    SeatStatus.BOOKABLE: "bookable",
    SeatStatus.RESERVED: "reserved",
    SeatStatus.TEMPORARILY_AWAY: "temporarily away",
    SeatStatus.IN_USE: "in use",
}


def describe_status(status: int) -> str:
    try:
        return _STATUS_LABELS[SeatStatus(status)]
    except ValueError:
        return f"unknown status ({status})"


class Period(BaseModel):
    """A bookable time segment of an area."""

    model_config = ConfigDict(frozen=True)

    id: int
    start_time: str
    end_time: str

    @property
    def label(self) -> str:
        return f"{self.start_time}-{self.end_time}"


class AreaRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str


class Area(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    parent_id: int = 0
    free_seats: int = 0
    total_seats: int = 0
    periods: tuple[Period, ...] = ()


class Seat(BaseModel):
    """Seat snapshot for one period. ``period_id`` is the provider segment it was fetched for."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    status: int
    status_name: str = ""
    area: AreaRef
    period_id: int

    @property
    def bookable(self) -> bool:
        return self.status == SeatStatus.BOOKABLE

    @property
    def label(self) -> str:
        return f"{self.area.name}-{self.name}"


class AreaSnapshot(BaseModel):
    """Seats of the configured area for one active period."""

    model_config = ConfigDict(frozen=True)

    period: Period
    preferred: tuple[Seat, ...] = ()
    all_seats: tuple[Seat, ...] = ()


class SessionState(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str = ""
    owner_id: str = ""
    display_name: str = ""
    expires_at: datetime | None = None


# --- Booking Results ---


class Outcome(str, Enum):
    SUCCESS = "success"
    ALREADY_BOOKED = "already_booked"
    NEED_REAUTH = "need_reauth"
    NOT_YET_BOOKABLE = "not_yet_bookable"
    RATE_LIMITED = "rate_limited"
    UNKNOWN_FAILURE = "unknown_failure"


class BookingAttemptResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Outcome
    raw_message: str = ""


NO_BOOKABLE_SEAT = "no bookable seat"
NO_BOOKABLE_PREFERRED_SEAT = "no bookable preferred seat"


class PeriodResult(BaseModel):
    period_id: int
    success: bool
    outcome: Outcome | None = None
    reason: str | None = None
    seat: Seat | None = None
    message: str = ""


class RunState(str, Enum):
    SUCCESS = "success"
    ABORTED = "aborted"
    EXHAUSTED = "exhausted"


class RunResult(BaseModel):
    state: RunState
    success: bool
    passes: int = 0
    elapsed_seconds: float = 0.0
    booked: list[PeriodResult] = []
    error: str | None = None
