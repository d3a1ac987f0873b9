"""YAML configuration loading and validation."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from seatmate.errors import ConfigError
from seatmate.models import SeatConfig


def _check_seats(seats: Any) -> dict[str, list[str]]:
    """Seat preferences as ``{area name: [seat names]}``.

    YAML reads unquoted seat numbers as integers, which drops leading zeros
    (``001`` becomes 1, ``010`` even becomes 8), so those are rejected with a
    hint rather than guessed at.
    """
    if seats is None:
        return {}
    if not isinstance(seats, dict):
        raise ConfigError(
            f"'seats' must map an area name to a list of seat names, got {type(seats).__name__}"
        )
    checked = {}
    for area, names in seats.items():
        if names is None:
            names = []
        elif isinstance(names, str):
            names = [names]
        elif not isinstance(names, list):
            raise ConfigError(f"Seats under '{area}' must be a list of seat names")
        for name in names:
            if not isinstance(name, str):
                raise ConfigError(
                    f"Seat {name!r} under '{area}' must be a quoted string, e.g. \"001\""
                )
        checked[str(area)] = [name.strip() for name in names]
    return checked


def _describe(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        where = ".".join(str(part) for part in err["loc"]) or "config"
        lines.append(f"{where}: {err['msg']}")
    return "; ".join(lines)


def load_config(path: str | Path) -> SeatConfig:
    """Load and validate a seat config from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a YAML mapping, got {type(data).__name__}")

    if "seats" in data:
        data["seats"] = _check_seats(data["seats"])

    try:
        return SeatConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config: {_describe(e)}") from e
