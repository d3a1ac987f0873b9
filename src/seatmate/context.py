"""Per-process state of the daily booking cycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from seatmate.models import AreaSnapshot, SeatConfig


@dataclass
class RunContext:
    """Config plus everything learned about the current target day.

    Built once at startup and handed to every component. ``snapshots`` and
    ``outcomes`` are only ever replaced as a whole, by the orchestrator.
    """

    config: SeatConfig
    target_date: date | None = None
    snapshots: dict[int, AreaSnapshot] = field(default_factory=dict)
    outcomes: dict[int, bool] = field(default_factory=dict)

    @property
    def day(self) -> str:
        if self.target_date is None:
            raise RuntimeError("RunContext.begin_day() has not been called")
        return self.target_date.isoformat()

    def begin_day(self, now: datetime) -> None:
        """Start a new calendar-day run: fresh outcomes, snapshots kept only if still for the same date."""
        target = now.date() + timedelta(days=self.config.delta)
        if target != self.target_date:
            self.snapshots = {}
        self.target_date = target
        self.outcomes = {period_id: False for period_id in self.snapshots}

    def replace_snapshots(self, snapshots: dict[int, AreaSnapshot]) -> None:
        self.snapshots = dict(snapshots)
        self.outcomes = {pid: self.outcomes.get(pid, False) for pid in self.snapshots}

    def clear_snapshots(self) -> None:
        self.snapshots = {}

    def mark(self, period_id: int, success: bool) -> None:
        self.outcomes = {**self.outcomes, period_id: success}

    @property
    def pending(self) -> list[int]:
        return [pid for pid, ok in self.outcomes.items() if not ok]

    @property
    def all_succeeded(self) -> bool:
        return bool(self.outcomes) and all(self.outcomes.values())
