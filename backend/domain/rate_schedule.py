"""Rate schedule value object (hourly rate, grace, blocks, night surcharge)."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping

from .errors import ValidationError

_TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")

DEFAULT_PRICING: Dict[str, Any] = {
    "hourly_rate": 80,
    "grace_minutes": 15,
    "block_minutes": 30,
    "night_charge_time": "22:30",
    "night_multiplier": 2,
}

# camelCase aliases accepted from API payloads
_ALIASES = {
    "hourlyRate": "hourly_rate",
    "graceMinutes": "grace_minutes",
    "blockMinutes": "block_minutes",
    "nightChargeTime": "night_charge_time",
    "nightMultiplier": "night_multiplier",
}


def to_money(value: Any) -> Decimal:
    """Coerce to a 2-place Decimal. Floats go through ``str`` to avoid binary noise."""
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(Decimal("0.01"))


def parse_clock_time(value: Any) -> time:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    match = _TIME_PATTERN.match(str(value).strip())
    if not match:
        raise ValidationError("invalid_schedule", "Night charge time must be in HH:MM format")
    return time(int(match.group(1)), int(match.group(2)))


@dataclass(frozen=True)
class RateSchedule:
    """Immutable snapshot used for one calculation."""

    hourly_rate: Decimal
    grace_minutes: int
    block_minutes: int
    night_charge_time: time
    night_multiplier: Decimal

    def __post_init__(self) -> None:
        errors = self.validation_errors()
        if errors:
            raise ValidationError("invalid_schedule", "; ".join(errors), {"errors": errors})

    @property
    def half_rate(self) -> Decimal:
        """Rate for every block after the first, rounded half-up to a whole unit."""
        return (self.hourly_rate / 2).quantize(Decimal("1"), rounding=ROUND_HALF_UP)

    @property
    def first_block_minutes(self) -> int:
        return 60 + self.grace_minutes

    def validation_errors(self) -> List[str]:
        errors = []
        if self.hourly_rate <= 0:
            errors.append("Hourly rate must be greater than 0")
        if not 0 <= self.grace_minutes <= 60:
            errors.append("Grace period must be between 0 and 60 minutes")
        if not 0 < self.block_minutes <= 120:
            errors.append("Block duration must be between 1 and 120 minutes")
        if not Decimal("1") <= self.night_multiplier <= Decimal("5"):
            errors.append("Night multiplier must be between 1 and 5")
        return errors

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RateSchedule":
        """Build from a config/API mapping; missing keys fall back to defaults."""
        merged = dict(DEFAULT_PRICING)
        for key, value in (data or {}).items():
            if value is None:
                continue
            merged[_ALIASES.get(key, key)] = value
        try:
            return cls(
                hourly_rate=to_money(merged["hourly_rate"]),
                grace_minutes=int(merged["grace_minutes"]),
                block_minutes=int(merged["block_minutes"]),
                night_charge_time=parse_clock_time(merged["night_charge_time"]),
                night_multiplier=Decimal(str(merged["night_multiplier"])),
            )
        except (TypeError, ValueError, InvalidOperation) as exc:
            raise ValidationError("invalid_schedule", f"Malformed rate schedule: {exc}") from exc

    @classmethod
    def default(cls) -> "RateSchedule":
        return cls.from_mapping(DEFAULT_PRICING)

    def to_config(self) -> Dict[str, Any]:
        """Snake-case mapping suitable for app_config.yaml."""
        return {
            "hourly_rate": _plain_number(self.hourly_rate),
            "grace_minutes": self.grace_minutes,
            "block_minutes": self.block_minutes,
            "night_charge_time": self.night_charge_time.strftime("%H:%M"),
            "night_multiplier": _plain_number(self.night_multiplier),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hourlyRate": _plain_number(self.hourly_rate),
            "graceMinutes": self.grace_minutes,
            "blockMinutes": self.block_minutes,
            "nightChargeTime": self.night_charge_time.strftime("%H:%M"),
            "nightMultiplier": _plain_number(self.night_multiplier),
        }


def _plain_number(value: Decimal) -> Any:
    """int when integral, else float (for YAML/JSON output only)."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)
