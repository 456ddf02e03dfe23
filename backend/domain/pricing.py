"""Time-tiered pricing: grace period, fixed billing blocks and night surcharge.

Billing rules:

- the first block spans ``60 + grace_minutes`` minutes and always costs the full
  hourly rate, however little of it was used;
- every later block spans ``block_minutes`` and costs half the hourly rate
  (rounded half-up to a whole unit), again charged in full when partially used;
- a block whose consumed span touches the night charge time of its start day is
  multiplied by ``night_multiplier``.

Everything here is pure: no clock reads, no I/O. Durations below one minute
(including ``end < start``) price at zero.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .rate_schedule import RateSchedule, to_money

ZERO = Decimal("0.00")
_ONE_MINUTE = timedelta(minutes=1)


@dataclass(frozen=True)
class PricingBlock:
    """One billed block of a rental, in chronological order."""

    period: str
    start: datetime
    end: datetime
    minutes: int
    rate: Decimal
    is_night_charge: bool
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "startTime": self.start.isoformat(),
            "endTime": self.end.isoformat(),
            "minutes": self.minutes,
            "rate": str(self.rate),
            "isNightCharge": self.is_night_charge,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingBlock":
        return cls(
            period=data["period"],
            start=datetime.fromisoformat(data["startTime"]),
            end=datetime.fromisoformat(data["endTime"]),
            minutes=int(data["minutes"]),
            rate=to_money(data["rate"]),
            is_night_charge=bool(data["isNightCharge"]),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class PricingResult:
    amount: Decimal
    total_minutes: int
    breakdown: List[PricingBlock] = field(default_factory=list)
    summary: str = ""

    @property
    def night_blocks(self) -> int:
        return sum(1 for block in self.breakdown if block.is_night_charge)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": str(self.amount),
            "totalMinutes": self.total_minutes,
            "breakdown": [block.to_dict() for block in self.breakdown],
            "summary": self.summary,
        }


def price(
    start: datetime,
    end: datetime,
    schedule: RateSchedule,
    tz: Optional[tzinfo] = None,
) -> PricingResult:
    """Price the elapsed time between ``start`` and ``end``.

    ``tz`` is the business time zone used to locate the night charge time;
    it defaults to ``start``'s own zone (naive datetimes are wall-clock time).
    """
    start, end = _align(start, end, tz)
    total_minutes = max(0, int((end - start).total_seconds() // 60))
    if total_minutes == 0:
        return PricingResult(amount=ZERO, total_minutes=0, breakdown=[], summary="No time elapsed")

    zone = tz or start.tzinfo
    breakdown: List[PricingBlock] = []
    remaining = total_minutes
    cursor = start

    first_span = schedule.first_block_minutes
    used = min(remaining, first_span)
    breakdown.append(
        _make_block(
            period=f"First {first_span // 60}h {first_span % 60}m",
            start=cursor,
            used=used,
            span=first_span,
            base_rate=schedule.hourly_rate,
            schedule=schedule,
            zone=zone,
            label="first period",
        )
    )
    remaining -= used
    cursor = cursor + timedelta(minutes=used)

    block_number = 2
    half_rate = schedule.half_rate
    while remaining > 0:
        used = min(remaining, schedule.block_minutes)
        breakdown.append(
            _make_block(
                period=f"Block {block_number} ({schedule.block_minutes}min)",
                start=cursor,
                used=used,
                span=schedule.block_minutes,
                base_rate=half_rate,
                schedule=schedule,
                zone=zone,
                label=f"{schedule.block_minutes}-minute block",
            )
        )
        remaining -= used
        cursor = cursor + timedelta(minutes=used)
        block_number += 1

    amount = to_money(sum((block.rate for block in breakdown), ZERO))
    return PricingResult(
        amount=amount,
        total_minutes=total_minutes,
        breakdown=breakdown,
        summary=pricing_summary(breakdown, total_minutes),
    )


def is_night_block(
    block_start: datetime,
    block_end: datetime,
    schedule: RateSchedule,
    tz: Optional[tzinfo] = None,
) -> bool:
    """True when ``[block_start, block_end]`` touches the night charge instant.

    The threshold is the night charge time on the local day the block starts.
    """
    local_start = block_start.astimezone(tz) if (tz and block_start.tzinfo) else block_start
    threshold = local_start.replace(
        hour=schedule.night_charge_time.hour,
        minute=schedule.night_charge_time.minute,
        second=0,
        microsecond=0,
    )
    return block_end >= threshold and block_start < threshold + _ONE_MINUTE


def apply_adjustments(
    amount: Decimal,
    discount_amount: Decimal = ZERO,
    additional_charges: Decimal = ZERO,
) -> Decimal:
    """Discounts and extra charges sit on top of the tiered amount, clamped at zero."""
    adjusted = to_money(amount) - to_money(discount_amount) + to_money(additional_charges)
    return max(ZERO, to_money(adjusted))


def pricing_summary(breakdown: List[PricingBlock], total_minutes: int) -> str:
    hours, minutes = divmod(total_minutes, 60)
    summary = f"{hours}h {minutes}m total"
    night_blocks = sum(1 for block in breakdown if block.is_night_charge)
    if night_blocks:
        summary += f" ({night_blocks} night-rate block{'s' if night_blocks > 1 else ''})"
    return summary


def round_up_start_time(moment: datetime, round_to_minutes: int) -> datetime:
    """Round up to the next ``round_to_minutes`` mark; a time already on a mark moves to the next one."""
    base = moment.replace(second=0, microsecond=0)
    if round_to_minutes <= 1:
        return base
    on_mark = moment.minute % round_to_minutes == 0 and moment.second == 0 and moment.microsecond == 0
    if on_mark:
        return base + timedelta(minutes=round_to_minutes)
    step = round_to_minutes - (moment.minute % round_to_minutes)
    return base + timedelta(minutes=step)


def _make_block(
    *,
    period: str,
    start: datetime,
    used: int,
    span: int,
    base_rate: Decimal,
    schedule: RateSchedule,
    zone: Optional[tzinfo],
    label: str,
) -> PricingBlock:
    end = start + timedelta(minutes=used)
    night = is_night_block(start, end, schedule, zone)
    rate = to_money(base_rate * schedule.night_multiplier) if night else to_money(base_rate)
    description = f"Full {label} ({used} minutes)" if used == span else f"Partial {label} ({used} minutes)"
    if zone is not None and start.tzinfo is not None:
        start, end = start.astimezone(zone), end.astimezone(zone)
    return PricingBlock(
        period=period,
        start=start,
        end=end,
        minutes=used,
        rate=rate,
        is_night_charge=night,
        description=description,
    )


def _align(start: datetime, end: datetime, tz: Optional[tzinfo]):
    """Make both datetimes comparable; a naive one is read in the other's (or ``tz``'s) zone."""
    if (start.tzinfo is None) == (end.tzinfo is None):
        return start, end
    if start.tzinfo is None:
        return start.replace(tzinfo=tz or end.tzinfo), end
    return start, end.replace(tzinfo=tz or start.tzinfo)
