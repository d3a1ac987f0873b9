"""Click CLI commands for Seatmate."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import datetime, timedelta

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from seatmate.api import LibraryApiClient
from seatmate.auth import AuthManager
from seatmate.booking import BookingEngine
from seatmate.catalog import SeatCatalog, child_areas, periods_for, resolve_area
from seatmate.config import load_config
from seatmate.context import RunContext
from seatmate.errors import SeatmateError
from seatmate.inventory import DEFAULT_PERIOD, InventoryFetcher
from seatmate.models import RunResult, SeatConfig
from seatmate.notifications import EmailNotifier, display_result
from seatmate.orchestrator import RetryOrchestrator
from seatmate.scheduler import DailyScheduler
from seatmate.session import KeepAlive, SessionGuard

console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_or_exit(config_file: str) -> SeatConfig:
    try:
        return load_config(config_file)
    except SeatmateError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


def _client_for(config: SeatConfig) -> LibraryApiClient:
    return LibraryApiClient(timeout=config.fetch.timeout_seconds, retries=config.fetch.retries)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """Seatmate: daily library seat booking."""
    _setup_logging(verbose)


@main.command()
def configure() -> None:
    """Store the seat service session cookie in the OS keyring."""
    userid = click.prompt("Student id")
    cookie = click.prompt("Cookie header (copied from the browser)", hide_input=True)

    auth = AuthManager()
    auth.store_session_cookie(userid, cookie.strip())
    console.print("[green]Cookie stored.[/green] Run 'seatmate test-auth CONFIG' to verify it.")


@main.command()
@click.argument("config_file", type=click.Path(exists=True))
def test_auth(config_file: str) -> None:
    """Log in with the stored cookie and show the session."""
    config = _load_or_exit(config_file)

    async def _test() -> None:
        async with _client_for(config) as client:
            session = await AuthManager(config, client).login()
            valid = await client.validate_session(session)

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="bold")
        table.add_column()
        table.add_row("User", f"{session.display_name} ({session.owner_id})")
        table.add_row("Token", f"{session.access_token[:12]}...")
        if session.expires_at is not None:
            table.add_row("Expires", session.expires_at.strftime("%Y-%m-%d %H:%M:%S"))
        table.add_row("Validated", "[green]yes[/green]" if valid else "[red]no[/red]")
        console.print(Panel(table, title="Session"))
        if not valid:
            sys.exit(1)

    try:
        asyncio.run(_test())
    except SeatmateError as e:
        console.print(f"[red]Auth test failed: {e}[/red]")
        sys.exit(1)


@main.command()
@click.argument("config_file", type=click.Path(exists=True))
def areas(config_file: str) -> None:
    """Show the configured area, its periods and which of them will be booked."""
    config = _load_or_exit(config_file)
    day = (datetime.now(config.tz).date() + timedelta(days=config.delta)).isoformat()

    async def _areas() -> None:
        async with _client_for(config) as client:
            catalog = SeatCatalog(client)
            listing = await catalog.list_areas(day)

        target = resolve_area(listing, config.library_name, config.area_name)
        children = child_areas(listing, target)
        periods = periods_for(target, children) or [DEFAULT_PERIOD]

        table = Table(title=f"{target.name} on {day}")
        table.add_column("Period")
        table.add_column("Id", justify="right")
        table.add_column("Booked")
        for period in periods:
            active = config.window.overlaps(period.start_time, period.end_time)
            table.add_row(period.label, str(period.id), "[green]yes[/green]" if active else "no")
        console.print(table)

        if children:
            sub = Table(title="Sub-areas")
            sub.add_column("Name")
            sub.add_column("Free", justify="right")
            sub.add_column("Total", justify="right")
            for child in children:
                sub.add_row(child.name, str(child.free_seats), str(child.total_seats))
            console.print(sub)

    try:
        asyncio.run(_areas())
    except SeatmateError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


def _show_config(config: SeatConfig, once: bool) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    table.add_row("User", config.userid)
    table.add_row("Area", config.area)
    for area_name, names in config.seats.items():
        table.add_row(f"Seats in {area_name}", ", ".join(names) or "(any)")
    table.add_row("Only preferred", "yes" if config.only else "no")
    table.add_row("Window", str(config.window))
    table.add_row("Target", f"today + {config.delta} day(s)")
    table.add_row("Retries", f"{config.max_attempts} every {config.retry_interval:g}s")
    if once:
        table.add_row("Mode", "[yellow]ONE-SHOT[/yellow]")
    else:
        table.add_row("Trigger", f"{config.trigger_time.isoformat()} {config.timezone}")
        if config.early_login_minutes:
            table.add_row("Early login", f"{config.early_login_minutes} min before")
    console.print(Panel(table, title="Booking Configuration"))


async def serve(config: SeatConfig, once: bool) -> RunResult | None:
    """Wire the booking stack together and run it.

    One-shot mode books immediately and returns the result. Otherwise the
    daily scheduler runs until SIGINT/SIGTERM and None is returned.
    """
    async with _client_for(config) as client:
        auth = AuthManager(config, client)
        guard = SessionGuard(auth, clock=lambda: datetime.now(config.tz))
        ctx = RunContext(config)
        notifier = EmailNotifier(config.email)
        fetcher = InventoryFetcher(SeatCatalog(client), config)
        engine = BookingEngine(ctx, guard, client, notifier)
        orchestrator = RetryOrchestrator(ctx, guard, fetcher, engine, notifier)

        if once:
            try:
                return await orchestrator.run()
            finally:
                await notifier.drain()

        scheduler = DailyScheduler(config.trigger_time, config.tz, config.early_login_minutes)
        offset = await scheduler.check_ntp_offset_async()
        if offset is not None:
            if abs(offset) > 0.5:
                console.print(
                    f"[red]Warning: System clock is off by {offset:.1f}s! "
                    f"Consider syncing with NTP.[/red]"
                )
            else:
                console.print(f"Clock offset: {offset*1000:.0f}ms (OK)")

        keep_alive = None
        if config.keep_alive.enabled:
            keep_alive = KeepAlive(guard, client, config.keep_alive.interval_seconds)

        async def _book(trigger: datetime) -> None:
            display_result(await orchestrator.run())

        async def _pre_refresh(trigger: datetime) -> None:
            if await orchestrator.warm_up(trigger) and keep_alive is not None:
                keep_alive.start()

        # Surface cookie and area problems now rather than at trigger time
        await _pre_refresh(scheduler.next_trigger())

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        runner = asyncio.create_task(scheduler.run_forever(_book, _pre_refresh))
        stopper = asyncio.create_task(stop.wait())
        try:
            await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await scheduler.shutdown()
            runner.cancel()
            stopper.cancel()
            outcomes = await asyncio.gather(runner, stopper, return_exceptions=True)
            if keep_alive is not None:
                await keep_alive.stop()
            await notifier.drain()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        if isinstance(outcomes[0], Exception):
            raise outcomes[0]
        return None


@main.command()
@click.argument("config_file", type=click.Path(exists=True))
@click.option("--once", is_flag=True, help="Book immediately and exit instead of waiting for the daily trigger.")
def run(config_file: str, once: bool) -> None:
    """Book library seats from a YAML config file."""
    config = _load_or_exit(config_file)
    once = once or config.book_once
    _show_config(config, once)

    try:
        result = asyncio.run(serve(config, once))
    except KeyboardInterrupt:
        console.print("\n[yellow]Booking cancelled.[/yellow]")
        sys.exit(130)
    except SeatmateError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Unexpected error: {e}[/red]")
        sys.exit(1)

    if result is None:
        console.print("\n[yellow]Scheduler stopped.[/yellow]")
        sys.exit(130)
    display_result(result)
    if not result.success:
        sys.exit(1)
