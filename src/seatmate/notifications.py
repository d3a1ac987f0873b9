"""Booking notifications: fire-and-forget email + Rich console output."""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from seatmate.models import (
    AreaSnapshot,
    EmailConfig,
    Period,
    RunResult,
    Seat,
    describe_status,
)

logger = logging.getLogger(__name__)

console = Console()

SMTP_TIMEOUT_SECONDS = 10


class Notifier(Protocol):
    def notify(self, subject: str, body: str) -> None: ...


class EmailNotifier:
    """
    Sends notifications over SMTP without blocking the booking flow.

    ``notify`` schedules delivery on a worker thread and returns at once;
    delivery failures are logged and never reach the caller. Call
    ``drain()`` before shutdown to let queued mails go out.
    """

    def __init__(self, config: EmailConfig) -> None:
        self.config = config
        self._pending: set[asyncio.Task] = set()

    def notify(self, subject: str, body: str) -> None:
        if not self.config.enable:
            logger.info("Email notifications disabled, skipping: %s", subject)
            return
        if not self.config.is_complete:
            logger.error(
                "Email not sent: smtp_host, username, password and recipient_email are all required"
            )
            return
        task = asyncio.create_task(self._send(subject, body))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self, timeout: float = 30.0) -> None:
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)

    async def _send(self, subject: str, body: str) -> None:
        logger.info("Sending email '%s' to %s", subject, self.config.recipient_email)
        try:
            await asyncio.to_thread(self._send_sync, subject, body)
        except smtplib.SMTPAuthenticationError:
            logger.error("Email not sent: SMTP login rejected, check username and password")
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Email not sent: %s", e)
        else:
            logger.info("Email sent: %s", subject)

    def _send_sync(self, subject: str, body: str) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.config.username
        message["To"] = self.config.recipient_email
        message.set_content(body)

        password = self.config.password.get_secret_value()
        context = ssl.create_default_context()
        if self.config.ssl_enable:
            with smtplib.SMTP_SSL(
                self.config.smtp_host,
                self.config.smtp_port,
                timeout=SMTP_TIMEOUT_SECONDS,
                context=context,
            ) as smtp:
                smtp.login(self.config.username, password)
                smtp.send_message(message)
        else:
            with smtplib.SMTP(
                self.config.smtp_host, self.config.smtp_port, timeout=SMTP_TIMEOUT_SECONDS
            ) as smtp:
                smtp.starttls(context=context)
                smtp.login(self.config.username, password)
                smtp.send_message(message)


# --- Message bodies ---


def booking_success_message(day: str, period: Period, seat: Seat) -> tuple[str, str]:
    subject = "Library seat booked"
    body = "\n".join([
        "Booking confirmed!",
        f"Date: {day}",
        f"Period: {period.label}",
        f"Area: {seat.area.name}",
        f"Seat: {seat.name}",
    ])
    return subject, body


def run_failure_message(
    day: str,
    result: RunResult,
    snapshots: dict[int, AreaSnapshot],
    pending: list[int],
    only_preferred: bool,
) -> tuple[str, str]:
    lines = [
        "Booking failed!",
        f"Date: {day}",
        f"Passes: {result.passes}",
        f"Reason: {result.error or 'unknown'}",
    ]
    for period_id in pending:
        snapshot = snapshots.get(period_id)
        if snapshot is None:
            continue
        lines += ["", f"Period {snapshot.period.label}", "Preferred seats:"]
        if not snapshot.preferred:
            lines.append("- none found")
        for seat in snapshot.preferred:
            lines.append(f"- {seat.label}: {describe_status(seat.status)}")
        if not only_preferred:
            free = [s for s in snapshot.all_seats if s.bookable]
            if free:
                lines.append("Other bookable seats in area:")
                lines += [f"- {s.label}" for s in free[:5]]
                if len(free) > 5:
                    lines.append(f"- ... {len(free)} in total")
    lines += [
        "",
        "Hints:",
        "1. If no seat was bookable, booking may not have opened yet or may already be closed.",
        "2. If only preferred seats failed, consider turning off 'only'.",
        "3. If the service reported rate limiting, try again later.",
    ]
    return "Library seat booking failed", "\n".join(lines)


def warm_up_failure_message(attempts: int, max_attempts: int, trigger: str, errors: list[str]) -> tuple[str, str]:
    lines = [
        "Early login failed!",
        f"Attempts: {attempts}/{max_attempts}",
        f"Booking time: {trigger}",
        "",
        "Errors:",
        *errors,
        "",
        "Login will be retried at booking time.",
    ]
    return "Library seat login failed", "\n".join(lines)


# --- Console ---


def display_result(result: RunResult) -> None:
    """Display the run result with Rich formatting."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()

    for booked in result.booked:
        if booked.seat is not None:
            table.add_row("Seat", booked.seat.label)
    if result.error:
        table.add_row("Error", result.error)
    table.add_row("State", result.state.value)
    table.add_row("Passes", str(result.passes))
    table.add_row("Elapsed", f"{result.elapsed_seconds:.3f}s")

    if result.success:
        console.print(Panel(table, title="SEAT BOOKED", border_style="green"))
    else:
        console.print(Panel(table, title="BOOKING FAILED", border_style="red"))
