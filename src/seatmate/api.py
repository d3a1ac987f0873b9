"""Async client for the library seat service, built on httpx.

Every endpoint answers with a JSON envelope ``{"status": int, "msg": str, "data": ...}``.
This module only speaks HTTP and returns raw envelopes (or ``(status, msg)``
pairs for the booking call); catalog.py turns them into domain models.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
import orjson

from seatmate.errors import BookingError
from seatmate.models import Period, Seat, SessionState

logger = logging.getLogger(__name__)

LIB_URL = "http://seatwx.lib.sdu.edu.cn:85"
HOME_URL = "http://seatwx.lib.sdu.edu.cn/"

# The service only serves the WeChat in-app browser
USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 10; SM-G975F) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Version/4.0 Chrome/88.0.4324.181 Mobile Safari/537.36 "
    "MicroMessenger/8.0.58"
)

# Provider reply meaning the booking request itself timed out server-side
BOOK_TIMEOUT_PHRASE = "预约超时"


def as_int(value: Any, default: int = 0) -> int:
    """Coerce a loosely typed JSON field to int."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_cookie_header(raw: str) -> dict[str, str]:
    """Split a ``name=value; name2=value2`` cookie header into a dict."""
    cookies: dict[str, str] = {}
    for part in raw.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name:
            cookies[name.strip()] = value.strip()
    return cookies


class LibraryApiClient:
    """
    Async HTTP client for the library seat service.

    Use as an async context manager so the connection pool and cookie jar
    live for the whole process:

        async with LibraryApiClient(timeout=10.0, retries=2) as client:
            envelope = await client.get_areas("2026-10-18")

    ``retries`` only applies to the booking call; catalog requests are
    retried by their caller, which owns the per-task budget.
    """

    BASE_URL = LIB_URL

    def __init__(
        self,
        timeout: float = 10.0,
        retries: int = 2,
        base_url: str | None = None,
    ) -> None:
        self._timeout = timeout
        self._retries = retries
        self._base_url = base_url or self.BASE_URL
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> LibraryApiClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._base_headers(),
            timeout=httpx.Timeout(self._timeout, connect=min(self._timeout, 5.0)),
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _base_headers(self) -> dict[str, str]:
        return {
            "User-Agent": USER_AGENT,
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "zh-CN,zh;q=0.9",
            "X-Requested-With": "XMLHttpRequest",
        }

    # ------------------------------------------------------------------
    # Cookie jar
    # ------------------------------------------------------------------

    def set_cookies(self, cookie_header: str) -> None:
        """Load a raw ``Cookie`` header into the jar."""
        assert self._client is not None
        for name, value in parse_cookie_header(cookie_header).items():
            self._client.cookies.set(name, value)

    def clear_cookies(self) -> None:
        assert self._client is not None
        self._client.cookies.clear()

    def get_cookie(self, name: str) -> str | None:
        assert self._client is not None
        for cookie in self._client.cookies.jar:
            if cookie.name == name:
                return cookie.value
        return None

    async def visit_home(self) -> None:
        """GET the landing page so the server refreshes its session cookies."""
        assert self._client is not None
        resp = await self._client.get(HOME_URL, headers={"Referer": HOME_URL})
        resp.raise_for_status()

    # ------------------------------------------------------------------
    # Catalog endpoints
    # ------------------------------------------------------------------

    async def _get_json(
        self, url: str, params: dict[str, Any], referer: str
    ) -> dict[str, Any]:
        assert self._client is not None
        resp = await self._client.get(url, params=params, headers={"Referer": referer})
        resp.raise_for_status()
        data = orjson.loads(resp.content)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object from {url}, got {type(data).__name__}")
        return data

    async def get_areas(self, day: str) -> dict[str, Any]:
        """GET /api.php/v3areas: every library and area with its periods."""
        return await self._get_json(
            "/api.php/v3areas", params={"date": day}, referer=HOME_URL
        )

    async def get_seats(
        self, area_id: int, period: Period | None, day: str
    ) -> dict[str, Any]:
        """GET /api.php/spaces_old: seats of one area for one period."""
        if period is not None:
            params: dict[str, Any] = {
                "area": area_id,
                "segment": period.id,
                "day": day,
                "startTime": period.start_time,
                "endTime": period.end_time,
            }
            referer = (
                f"{LIB_URL}/web/seat3?area={area_id}&segment={period.id}"
                f"&day={day}&startTime={period.start_time}&endTime={period.end_time}"
            )
        else:
            params = {"area": area_id, "day": day, "startTime": "08:00", "endTime": "22:30"}
            referer = f"{LIB_URL}/web/seat3?area={area_id}&day={day}"
        return await self._get_json("/api.php/spaces_old", params=params, referer=referer)

    # ------------------------------------------------------------------
    # Session endpoints
    # ------------------------------------------------------------------

    async def _post_form(
        self, url: str, form: dict[str, Any], referer: str
    ) -> tuple[int, str]:
        assert self._client is not None
        resp = await self._client.post(
            url,
            data={k: str(v) for k, v in form.items()},
            headers={"Referer": referer, "Origin": LIB_URL},
        )
        resp.raise_for_status()
        body = orjson.loads(resp.content)
        if not isinstance(body, dict):
            raise ValueError(f"Expected a JSON object from {url}")
        return as_int(body.get("status")), str(body.get("msg") or "")

    async def validate_session(self, session: SessionState) -> bool:
        """POST /api.php/profile: True if the provider still accepts the token."""
        try:
            status, msg = await self._post_form(
                "/api.php/profile",
                {"access_token": session.access_token, "userid": session.owner_id},
                referer=f"{LIB_URL}/",
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Session validation request failed: %s", e)
            return False
        if status != 1:
            logger.warning("Session validation rejected: %s", msg)
            return False
        logger.debug("Session validated")
        return True

    async def probe(self, session: SessionState) -> tuple[int, str]:
        """POST /api.php/profile/books: harmless authenticated read used as keep-alive."""
        return await self._post_form(
            "/api.php/profile/books",
            {
                "access_token": session.access_token,
                "userid": session.owner_id,
                "count": 5,
                "page": 1,
            },
            referer=f"{LIB_URL}/user/index/book",
        )

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(
        self, seat: Seat, period: Period, day: str, session: SessionState
    ) -> tuple[int, str]:
        """POST /api.php/spaces/{seat}/book: returns the raw ``(status, msg)``.

        Transport errors, unparseable bodies and "预约超时" replies are retried
        up to ``retries`` times. Raises BookingError if no usable reply arrived.
        """
        assert self._client is not None
        form = {
            "access_token": session.access_token,
            "userid": session.owner_id,
            "segment": seat.period_id,
            "type": 1,
            "operateChannel": 2,
        }
        referer = (
            f"{LIB_URL}/web/seat3?area={seat.area.id}&segment={seat.period_id}"
            f"&day={day}&startTime={period.start_time}&endTime={period.end_time}"
        )

        reply: tuple[int, str] | None = None
        last_error: Exception | None = None
        for attempt in range(self._retries + 1):
            try:
                reply = await self._post_form(
                    f"/api.php/spaces/{seat.id}/book", form, referer=referer
                )
            except httpx.TimeoutException as e:
                logger.error("Booking request timed out (try %d), retrying", attempt + 1)
                last_error = e
                continue
            except (httpx.HTTPError, ValueError) as e:
                logger.error("Booking request failed (try %d): %s", attempt + 1, e)
                last_error = e
                continue
            if BOOK_TIMEOUT_PHRASE not in reply[1]:
                break

        if reply is None:
            raise BookingError(f"No usable reply from booking endpoint: {last_error}")

        logger.info(
            "Book %s %s [%s] replied: status=%d msg=%s",
            day,
            period.label,
            seat.label,
            reply[0],
            reply[1],
        )
        return reply
