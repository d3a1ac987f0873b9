"""Tests for the retry orchestrator, wired to a real engine and session guard."""

from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from seatmate.booking import BookingEngine
from seatmate.context import RunContext
from seatmate.errors import AuthError, CatalogError
from seatmate.models import RunState, SessionState, describe_status
from seatmate.orchestrator import RetryOrchestrator
from seatmate.session import SessionGuard

from conftest import AFTERNOON, MORNING, make_config, make_seat, make_snapshot

NOW = datetime(2026, 10, 17, 6, 2, tzinfo=ZoneInfo("Asia/Shanghai"))
SESSION = SessionState(access_token="tok", owner_id="202100000001")
FAILURE_SUBJECT = "Library seat booking failed"


def _snapshots(bookable: bool = True):
    status = 1 if bookable else 2
    return {
        MORNING.id: make_snapshot(
            MORNING, [make_seat("001", status=2), make_seat("002", status=status)]
        ),
        AFTERNOON.id: make_snapshot(
            AFTERNOON,
            [make_seat("001", status=2, period_id=102), make_seat("002", status=status, period_id=102)],
        ),
    }


def _stack(replies=None, snapshots=None, logins=None, **config):
    ctx = RunContext(make_config(**config))
    auth = MagicMock()
    auth.login = AsyncMock(side_effect=logins) if logins else AsyncMock(return_value=SESSION)
    guard = SessionGuard(auth, clock=lambda: NOW)
    fetcher = MagicMock()
    if isinstance(snapshots, list):
        fetcher.fetch = AsyncMock(side_effect=snapshots)
    else:
        fetcher.fetch = AsyncMock(return_value=snapshots if snapshots is not None else _snapshots())
    provider = MagicMock()
    if callable(replies):
        provider.book = AsyncMock(side_effect=replies)
    else:
        provider.book = AsyncMock(side_effect=list(replies or [(1, "预约成功")] * 2))
    provider.validate_session = AsyncMock(return_value=True)
    notifier = MagicMock()
    sleep = AsyncMock()
    engine = BookingEngine(ctx, guard, provider, notifier)
    orchestrator = RetryOrchestrator(
        ctx, guard, fetcher, engine, notifier, clock=lambda: NOW, sleep=sleep
    )
    return SimpleNamespace(
        ctx=ctx,
        auth=auth,
        guard=guard,
        fetcher=fetcher,
        provider=provider,
        notifier=notifier,
        sleep=sleep,
        orchestrator=orchestrator,
    )


def _failure_notices(notifier: MagicMock) -> list:
    return [c for c in notifier.notify.call_args_list if c.args[0] == FAILURE_SUBJECT]


def _booked_periods(provider: MagicMock) -> list[int]:
    return [c.args[1].id for c in provider.book.await_args_list]


@pytest.mark.asyncio
class TestRetryOrchestrator:
    async def test_books_every_period_in_one_pass(self):
        s = _stack()

        result = await s.orchestrator.run()

        assert result.state is RunState.SUCCESS
        assert result.success
        assert result.passes == 1
        assert result.error is None
        assert [b.period_id for b in result.booked] == [MORNING.id, AFTERNOON.id]
        assert all(b.seat.name == "002" for b in result.booked)
        s.sleep.assert_not_awaited()
        assert _failure_notices(s.notifier) == []

    async def test_pass_budget_is_max_attempts_plus_one(self):
        s = _stack(replies=lambda *a: (0, "系统繁忙"))

        result = await s.orchestrator.run(max_attempts=2, interval=1)

        assert result.state is RunState.EXHAUSTED
        assert result.passes == 3
        assert s.provider.book.await_count == 6
        assert [c.args for c in s.sleep.await_args_list] == [(1,), (1,)]
        assert len(_failure_notices(s.notifier)) == 1

    async def test_zero_retries_means_one_pass(self):
        s = _stack(replies=lambda *a: (0, "该座位已被预约"))

        result = await s.orchestrator.run(max_attempts=0, interval=5)

        assert result.passes == 1
        s.sleep.assert_not_awaited()

    async def test_defaults_come_from_config(self):
        s = _stack(replies=lambda *a: (0, "系统繁忙"), retry=1, retry_interval=7)

        result = await s.orchestrator.run()

        assert result.passes == 2
        s.sleep.assert_awaited_once_with(7)

    async def test_exhausted_run_reports_last_seat_statuses(self):
        s = _stack(replies=lambda *a: (0, "系统繁忙"))

        await s.orchestrator.run(max_attempts=1, interval=1)

        body = _failure_notices(s.notifier)[0].args[1]
        assert "Period 08:00-14:00" in body
        assert "Period 14:00-22:30" in body
        assert "Preferred seats:" in body
        assert f"图东区(3-4)-001: {describe_status(2)}" in body
        assert s.ctx.snapshots

    async def test_snapshots_are_refetched_after_a_failed_pass(self):
        s = _stack(replies=lambda *a: (0, "系统繁忙"))

        await s.orchestrator.run(max_attempts=2, interval=1)

        assert s.fetcher.fetch.await_count == 3

    async def test_booked_period_is_not_retried(self):
        s = _stack(replies=[(1, "预约成功"), (0, "系统繁忙"), (1, "预约成功")])

        result = await s.orchestrator.run(max_attempts=2, interval=1)

        assert result.state is RunState.SUCCESS
        assert result.passes == 2
        assert _booked_periods(s.provider) == [MORNING.id, AFTERNOON.id, AFTERNOON.id]

    async def test_reauth_stops_the_pass_and_forces_login(self):
        s = _stack(replies=[(2, "请重新登录"), (1, "预约成功"), (1, "预约成功")])

        result = await s.orchestrator.run(max_attempts=1, interval=1)

        assert result.state is RunState.SUCCESS
        assert result.passes == 2
        # second period untouched in the pass that hit the reauth reply
        assert _booked_periods(s.provider) == [MORNING.id, MORNING.id, AFTERNOON.id]
        assert s.auth.login.await_count == 2
        assert not s.guard.invalidated

    async def test_reauth_marks_period_failed(self):
        s = _stack(replies=lambda *a: (2, "请重新登录"))

        result = await s.orchestrator.run(max_attempts=0, interval=1)

        assert not result.success
        assert s.guard.invalidated
        assert s.ctx.outcomes[MORNING.id] is False

    async def test_rate_limit_aborts_immediately(self):
        s = _stack(replies=lambda *a: (1, "访问频繁"))

        result = await s.orchestrator.run(max_attempts=5, interval=1)

        assert result.state is RunState.ABORTED
        assert result.passes == 1
        assert s.provider.book.await_count == 1
        assert s.ctx.outcomes == {MORNING.id: False, AFTERNOON.id: False}
        s.sleep.assert_not_awaited()
        assert "rate limited" in result.error
        assert len(_failure_notices(s.notifier)) == 1

    async def test_only_mode_aborts_when_no_preferred_seat_is_bookable(self):
        s = _stack(snapshots=_snapshots(bookable=False), only=True)

        result = await s.orchestrator.run(max_attempts=5, interval=1)

        assert result.state is RunState.ABORTED
        assert result.passes == 1
        assert "only mode" in result.error
        s.provider.book.assert_not_awaited()

    async def test_only_mode_keeps_retrying_while_a_preferred_seat_is_bookable(self):
        snapshots = _snapshots(bookable=False)
        snapshots[AFTERNOON.id] = make_snapshot(AFTERNOON, [make_seat("002", period_id=102)])
        s = _stack(snapshots=snapshots, replies=lambda *a: (0, "该座位已被预约"), only=True)

        result = await s.orchestrator.run(max_attempts=2, interval=1)

        assert result.state is RunState.EXHAUSTED
        assert result.passes == 3

    async def test_login_failure_fails_only_the_pass(self):
        s = _stack(logins=[AuthError("cookie expired"), SESSION])

        result = await s.orchestrator.run(max_attempts=2, interval=1)

        assert result.state is RunState.SUCCESS
        assert result.passes == 2

    async def test_catalog_failure_fails_only_the_pass(self):
        s = _stack(snapshots=[CatalogError("Period 14:00-22:30: no seats found"), _snapshots()])

        result = await s.orchestrator.run(max_attempts=2, interval=1)

        assert result.state is RunState.SUCCESS
        assert result.passes == 2

    async def test_last_error_is_reported(self):
        s = _stack(snapshots=[CatalogError("area listing failed")] * 2)

        result = await s.orchestrator.run(max_attempts=1, interval=1)

        assert result.state is RunState.EXHAUSTED
        assert result.error == "area listing failed"


@pytest.mark.asyncio
class TestWarmUp:
    async def test_warm_up_loads_inventory_for_the_run(self):
        s = _stack()

        assert await s.orchestrator.warm_up(NOW + timedelta(minutes=5)) is True
        result = await s.orchestrator.run()

        assert result.success
        assert s.fetcher.fetch.await_count == 1
        assert s.auth.login.await_count == 1

    async def test_warm_up_gives_up_after_max_login_attempts(self):
        s = _stack(logins=[AuthError("cookie expired")] * 3, max_login_attempts=3)

        assert await s.orchestrator.warm_up(NOW + timedelta(minutes=5)) is False

        assert s.auth.login.await_count == 3
        assert s.sleep.await_count == 3
        subject, body = s.notifier.notify.call_args.args
        assert subject == "Library seat login failed"
        assert "cookie expired" in body

    async def test_warm_up_stops_at_deadline(self):
        s = _stack()

        assert await s.orchestrator.warm_up(NOW - timedelta(seconds=1)) is False
        s.auth.login.assert_not_awaited()
