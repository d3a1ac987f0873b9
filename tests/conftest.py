"""Shared test fixtures."""

import json
from urllib.parse import quote

import pytest

from seatmate.models import AreaRef, AreaSnapshot, Period, Seat, SeatConfig

LIBRARY = "中心馆"
AREA = "图东区(3-4)"
USERID = "202100000001"


def make_config(**overrides) -> SeatConfig:
    data = {
        "userid": USERID,
        "area": f"{LIBRARY}-{AREA}",
        "seats": {AREA: ["001", "002"]},
        "retry": 3,
        "retry_interval": 1,
    }
    data.update(overrides)
    return SeatConfig.model_validate(data)


def make_seat(name: str, status: int = 1, seat_id: int | None = None, period_id: int = 101) -> Seat:
    return Seat(
        id=seat_id if seat_id is not None else 1000 + int(name),
        name=name,
        status=status,
        area=AreaRef(id=10, name=AREA),
        period_id=period_id,
    )


def make_snapshot(
    period: Period, preferred: list[Seat], others: list[Seat] | None = None
) -> AreaSnapshot:
    return AreaSnapshot(
        period=period,
        preferred=tuple(preferred),
        all_seats=tuple(preferred) + tuple(others or ()),
    )


MORNING = Period(id=101, start_time="08:00", end_time="14:00")
AFTERNOON = Period(id=102, start_time="14:00", end_time="22:30")


@pytest.fixture
def seat_config():
    return make_config()


@pytest.fixture
def sample_areas_response():
    """A realistic /api.php/v3areas response (current ``seatinfo`` shape)."""
    periods = {
        "data": {
            "list": [
                {"bookTimeId": 101, "startTime": "08:00", "endTime": "14:00"},
                {"bookTimeId": 102, "startTime": "14:00", "endTime": "22:30"},
            ]
        }
    }
    return {
        "status": 1,
        "msg": "",
        "data": {
            "list": {
                "seatinfo": [
                    {"id": 1, "name": LIBRARY, "parentId": 0, "TotalCount": 800, "UnavailableSpace": 500},
                    {
                        "id": 10,
                        "name": AREA,
                        "parentId": 1,
                        "TotalCount": 120,
                        "UnavailableSpace": 100,
                        "area_times": periods,
                    },
                    {"id": 11, "name": "图西区(3-4)", "parentId": 1, "TotalCount": 90, "UnavailableSpace": 90},
                ]
            }
        },
    }


@pytest.fixture
def sample_seats_response():
    """A realistic /api.php/spaces_old response."""
    return {
        "status": 1,
        "msg": "",
        "data": {
            "list": [
                {"id": 1001, "name": "001", "status": 2, "status_name": "已预约"},
                {"id": 1002, "name": "002", "status": 1, "status_name": "空闲"},
                {"id": 1003, "no": "003", "status": 1, "status_name": "空闲"},
            ]
        },
    }


@pytest.fixture
def sample_cookie_header():
    """Cookie header as copied from the browser after the WeChat login."""
    user = quote(json.dumps({
        "access_token": "tok_abc123",
        "userid": USERID,
        "expire": "2026-10-18 12:00:00",
    }))
    profile = quote(json.dumps({"name": "张三"}, ensure_ascii=False))
    return f"user={user}; userObj={profile}; PHPSESSID=sess42"
