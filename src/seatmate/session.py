"""Session lifecycle: expiry guard, forced re-login, optional keep-alive."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Protocol

import httpx

from seatmate.api import LibraryApiClient
from seatmate.classifier import STATUS_SUCCESS, classify
from seatmate.models import Outcome, SessionState

logger = logging.getLogger(__name__)

# Re-login this long before the provider's expiry
SAFETY_MARGIN = timedelta(minutes=2)


class Authenticator(Protocol):
    async def login(self) -> SessionState: ...

    def reset(self) -> None: ...


class SessionGuard:
    """
    Owns the current SessionState and decides when a fresh login is needed.

    The state is replaced wholesale on every login. ``invalidate()`` is how
    other components report "the provider wants a re-login"; the next
    ``ensure_valid()`` then logs in again even if the expiry has not passed.

    One lock serializes logins, booking calls and keep-alive probes, so no
    two requests ever run against the same session at once:

        async with guard.hold():
            await client.book(...)
    """

    def __init__(
        self,
        authenticator: Authenticator,
        clock: Callable[[], datetime] | None = None,
        margin: timedelta = SAFETY_MARGIN,
    ) -> None:
        self._auth = authenticator
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._margin = margin
        self._state: SessionState | None = None
        self._invalidated = False
        self._lock = asyncio.Lock()
        self.login_count = 0

    @property
    def current(self) -> SessionState | None:
        return self._state

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    def is_expired(self, now: datetime | None = None) -> bool:
        state = self._state
        if state is None or not state.access_token:
            return True
        if state.expires_at is None:
            return False
        now = now or self._clock()
        return now >= state.expires_at - self._margin

    def invalidate(self, reason: str = "") -> None:
        if not self._invalidated:
            logger.warning("Session invalidated%s", f": {reason}" if reason else "")
        self._invalidated = True

    def hold(self) -> asyncio.Lock:
        """Lock held while a request runs against the current session."""
        return self._lock

    async def ensure_valid(self) -> SessionState:
        """Return a usable session, logging in again if needed. Raises AuthError."""
        async with self._lock:
            if self._state is not None and not self._invalidated and not self.is_expired():
                return self._state

            if self._state is None:
                logger.info("No session yet, logging in")
            elif self._invalidated:
                logger.info("Session flagged for re-login, logging in again")
            else:
                logger.info("Session expired or about to expire, logging in again")

            self._auth.reset()
            state = await self._auth.login()
            self._state = state
            self._invalidated = False
            self.login_count += 1
            return state


class KeepAlive:
    """Background prober that keeps the session warm between logins.

    Disabled unless ``keep_alive.enabled`` is set. Probes share the guard's
    lock, so they never overlap a booking request.
    """

    def __init__(
        self, guard: SessionGuard, client: LibraryApiClient, interval_seconds: float = 30.0
    ) -> None:
        self.guard = guard
        self.client = client
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info("Starting session keep-alive every %.0fs", self.interval_seconds)
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Keep-alive stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            if not await self.probe_once():
                logger.warning("[keep-alive] session rejected, stopping keep-alive")
                return

    async def probe_once(self) -> bool:
        """Send one probe. False means the session is gone and probing should stop."""
        session = self.guard.current
        if session is None or self.guard.invalidated or self.guard.is_expired():
            logger.debug("[keep-alive] no live session, skipping probe")
            return True

        async with self.guard.hold():
            try:
                status, msg = await self.client.probe(session)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("[keep-alive] probe failed: %s", e)
                return True

        if status != STATUS_SUCCESS and classify(status, msg) is Outcome.NEED_REAUTH:
            self.guard.invalidate(f"keep-alive probe rejected: {msg}")
            return False
        logger.info("[keep-alive] session alive")
        return True
