"""Session-cookie storage via OS keyring, and login against the seat service.

The service authenticates through a WeChat OAuth handshake that cannot be
scripted. The user copies the resulting cookie header once (``seatmate
configure``); login replays it, lets the server refresh it, and reads the
access token out of the ``user`` cookie.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import unquote

import httpx
import keyring
import orjson

from seatmate.api import LibraryApiClient
from seatmate.errors import AuthError
from seatmate.models import SeatConfig, SessionState

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "seatmate-library"

# Lifetime assumed when the server omits the expiry
DEFAULT_SESSION_LIFETIME = timedelta(minutes=30)
EXPIRE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _decode_cookie_json(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        value = orjson.loads(unquote(raw))
    except orjson.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


class AuthManager:
    """Handles cookie storage (OS keyring) and login."""

    def __init__(self, config: SeatConfig | None = None, client: LibraryApiClient | None = None) -> None:
        self.config = config
        self.client = client

    def store_session_cookie(self, userid: str, cookie: str) -> None:
        """Store the session cookie header in the OS keyring."""
        keyring.set_password(KEYRING_SERVICE, "userid", userid)
        keyring.set_password(KEYRING_SERVICE, userid, cookie)
        logger.info("Session cookie stored in keyring.")

    def load_session_cookie(self, userid: str) -> str:
        """Cookie from the config file if present, else from the OS keyring."""
        if self.config is not None and self.config.session_cookie is not None:
            cookie = self.config.session_cookie.get_secret_value()
            if cookie:
                return cookie
        cookie = keyring.get_password(KEYRING_SERVICE, userid)
        if not cookie:
            raise AuthError(
                f"No session cookie found for {userid}. Run 'seatmate configure' first."
            )
        return cookie

    def reset(self) -> None:
        """Forget cookies cached by the HTTP client."""
        if self.client is not None:
            self.client.clear_cookies()

    async def login(self) -> SessionState:
        """Replay the stored cookie and read the session it grants."""
        if self.config is None or self.client is None:
            raise AuthError("AuthManager needs a config and a client to log in")

        userid = self.config.userid
        self.client.set_cookies(self.load_session_cookie(userid))
        try:
            await self.client.visit_home()
        except httpx.HTTPError as e:
            raise AuthError(f"Login failed: could not reach the seat service ({e})") from e
        return self.session_from_cookies(datetime.now(self.config.tz))

    def session_from_cookies(self, now: datetime) -> SessionState:
        """Build a SessionState from the ``user`` / ``userObj`` cookies."""
        assert self.client is not None and self.config is not None
        user = _decode_cookie_json(self.client.get_cookie("user"))
        if not user or not user.get("access_token"):
            raise AuthError("Login failed: session cookie is missing or expired, run 'seatmate configure'")

        profile = _decode_cookie_json(self.client.get_cookie("userObj")) or {}
        owner_id = str(user.get("userid") or self.config.userid)
        if owner_id != self.config.userid:
            logger.warning("Session belongs to %s, not configured user %s", owner_id, self.config.userid)

        expires_at = now + DEFAULT_SESSION_LIFETIME
        raw_expire = user.get("expire")
        if raw_expire:
            try:
                expires_at = datetime.strptime(str(raw_expire), EXPIRE_FORMAT).replace(tzinfo=now.tzinfo)
            except ValueError:
                logger.warning("Could not parse session expiry %r, assuming %s", raw_expire, DEFAULT_SESSION_LIFETIME)

        session = SessionState(
            access_token=str(user["access_token"]),
            owner_id=owner_id,
            display_name=str(profile.get("name") or owner_id),
            expires_at=expires_at,
        )
        logger.info(
            "Authenticated as %s (%s), session expires %s",
            session.display_name,
            session.owner_id,
            expires_at.strftime(EXPIRE_FORMAT),
        )
        return session
