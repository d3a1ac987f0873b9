"""Maps raw booking replies ``(status, msg)`` to a semantic Outcome.

The provider's status codes are coarse; the message text is the real signal.
Rules are checked in priority order, and ``classify`` never raises.
"""

from __future__ import annotations

import re

from seatmate.models import BookingAttemptResult, Outcome

STATUS_SUCCESS = 1
STATUS_NEED_REAUTH = 2
STATUS_WINDOW_CLOSED = 3

RATE_LIMIT_PHRASE = "访问频繁"
# "cannot book twice": the seat is already ours
DUPLICATE_BOOKING_PHRASE = "不可重复预约"
REAUTH_KEYWORDS = ("重新登录", "access_token", "登录", "认证", "过期", "无效", "token")
WINDOW_CLOSED_RE = re.compile(r"预约已停止|开始预约时间")
TAKEN_KEYWORDS = ("已被预约", "已被占用", "已被选择")


def needs_reauth(message: str) -> bool:
    return any(k in message for k in REAUTH_KEYWORDS)


def classify(status_code: object, message: object) -> Outcome:
    """Classify one booking reply."""
    try:
        status = int(status_code)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        status = 0
    msg = message if isinstance(message, str) else ("" if message is None else str(message))

    if RATE_LIMIT_PHRASE in msg:
        return Outcome.RATE_LIMITED
    if status == STATUS_SUCCESS or DUPLICATE_BOOKING_PHRASE in msg:
        return Outcome.SUCCESS
    if status == STATUS_NEED_REAUTH or needs_reauth(msg):
        return Outcome.NEED_REAUTH
    if status == STATUS_WINDOW_CLOSED or WINDOW_CLOSED_RE.search(msg):
        return Outcome.NOT_YET_BOOKABLE
    if any(k in msg for k in TAKEN_KEYWORDS):
        return Outcome.ALREADY_BOOKED
    return Outcome.UNKNOWN_FAILURE


def classify_reply(status_code: object, message: object) -> BookingAttemptResult:
    return BookingAttemptResult(
        outcome=classify(status_code, message),
        raw_message="" if message is None else str(message),
    )
