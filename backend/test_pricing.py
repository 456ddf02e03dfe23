"""Pricing rules: grace period, billing blocks, night surcharge and adjustments."""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from conftest import IST, ist
from domain.errors import ValidationError
from domain.pricing import ZERO, apply_adjustments, is_night_block, price, round_up_start_time
from domain.rate_schedule import RateSchedule


def _amount(start, minutes, schedule, tz=IST):
    return price(start, start + timedelta(minutes=minutes), schedule, tz).amount


def test_day_rental_with_one_extra_block(schedule):
    result = price(ist(2026, 3, 10, 10, 0), ist(2026, 3, 10, 11, 30), schedule, IST)

    assert result.amount == Decimal("120.00")
    assert result.total_minutes == 90
    assert [(b.minutes, b.rate) for b in result.breakdown] == [(75, Decimal("80.00")), (15, Decimal("40.00"))]
    assert not any(b.is_night_charge for b in result.breakdown)
    assert result.breakdown[1].description.startswith("Partial")


def test_block_touching_night_time_is_doubled(schedule):
    result = price(ist(2026, 3, 10, 22, 0), ist(2026, 3, 10, 23, 0), schedule, IST)

    assert result.amount == Decimal("160.00")
    assert result.breakdown[0].is_night_charge
    assert "night-rate block" in result.summary


@pytest.mark.parametrize(
    "start,end",
    [
        (ist(2026, 3, 10, 12, 0), ist(2026, 3, 10, 11, 0)),
        (ist(2026, 3, 10, 12, 0), ist(2026, 3, 10, 12, 0, 59)),
    ],
)
def test_under_one_minute_prices_zero(schedule, start, end):
    result = price(start, end, schedule, IST)

    assert result.amount == ZERO
    assert result.total_minutes == 0
    assert result.breakdown == []


@pytest.mark.parametrize("minutes", [1, 30, 60, 75])
def test_first_block_is_flat_up_to_grace(schedule, minutes):
    assert _amount(ist(2026, 3, 10, 9, 0), minutes, schedule) == Decimal("80.00")


@pytest.mark.parametrize("minutes,expected", [(76, "120.00"), (105, "120.00"), (106, "160.00"), (135, "160.00")])
def test_partial_blocks_charge_in_full(schedule, minutes, expected):
    assert _amount(ist(2026, 3, 10, 9, 0), minutes, schedule) == Decimal(expected)


def test_price_never_decreases_with_longer_rentals(schedule):
    start = ist(2026, 3, 10, 19, 0)
    amounts = [_amount(start, minutes, schedule) for minutes in range(0, 8 * 60)]
    assert amounts == sorted(amounts)


def test_night_threshold_boundaries(schedule):
    # consumed span ends exactly on 22:30
    assert _amount(ist(2026, 3, 10, 21, 15), 75, schedule) == Decimal("160.00")
    # block starting on the threshold minute
    assert _amount(ist(2026, 3, 10, 22, 30), 60, schedule) == Decimal("160.00")
    # one minute later the threshold has passed
    assert _amount(ist(2026, 3, 10, 22, 31), 60, schedule) == Decimal("80.00")
    # ends one minute short of the threshold
    assert _amount(ist(2026, 3, 10, 21, 14), 75, schedule) == Decimal("80.00")


def test_is_night_block_uses_start_day_threshold(schedule):
    # after midnight the threshold moves to the next evening
    assert not is_night_block(ist(2026, 3, 11, 0, 10), ist(2026, 3, 11, 1, 25), schedule, IST)
    assert is_night_block(ist(2026, 3, 10, 22, 0), ist(2026, 3, 10, 22, 30), schedule, IST)


def test_only_blocks_touching_the_threshold_are_surcharged(schedule):
    result = price(ist(2026, 3, 10, 21, 0), ist(2026, 3, 10, 23, 15), schedule, IST)

    flags = [b.is_night_charge for b in result.breakdown]
    assert flags == [False, True, False]
    assert result.amount == Decimal("80.00") + Decimal("80.00") + Decimal("40.00")


def test_utc_inputs_use_business_zone_for_night(schedule):
    start = datetime(2026, 3, 10, 16, 30, tzinfo=timezone.utc)  # 22:00 IST
    result = price(start, start + timedelta(hours=1), schedule, IST)

    assert result.amount == Decimal("160.00")
    assert result.breakdown[0].start.utcoffset() == timedelta(hours=5, minutes=30)


def test_half_rate_rounds_half_up():
    schedule = RateSchedule.from_mapping({"hourly_rate": 75})
    assert schedule.half_rate == Decimal("38")
    assert _amount(ist(2026, 3, 10, 9, 0), 90, schedule) == Decimal("113.00")


def test_fractional_night_multiplier():
    schedule = RateSchedule.from_mapping({"nightMultiplier": 1.5})
    assert _amount(ist(2026, 3, 10, 22, 0), 60, schedule) == Decimal("120.00")


def test_custom_grace_and_block_sizes():
    schedule = RateSchedule.from_mapping({"grace_minutes": 0, "block_minutes": 15})
    assert schedule.first_block_minutes == 60
    # 60 + 15 + 5 -> three blocks
    assert _amount(ist(2026, 3, 10, 9, 0), 80, schedule) == Decimal("160.00")


def test_adjustments_clamp_at_zero():
    assert apply_adjustments(Decimal("120"), Decimal("20"), Decimal("15.5")) == Decimal("115.50")
    assert apply_adjustments(Decimal("80"), Decimal("500")) == ZERO


@pytest.mark.parametrize(
    "moment,step,expected",
    [
        (ist(2026, 3, 10, 10, 2, 30), 5, ist(2026, 3, 10, 10, 5)),
        (ist(2026, 3, 10, 10, 0), 5, ist(2026, 3, 10, 10, 5)),
        (ist(2026, 3, 10, 10, 7, 1), 15, ist(2026, 3, 10, 10, 15)),
        (ist(2026, 3, 10, 23, 58), 5, ist(2026, 3, 11, 0, 0)),
        (ist(2026, 3, 10, 10, 7, 45), 1, ist(2026, 3, 10, 10, 7)),
    ],
)
def test_round_up_start_time(moment, step, expected):
    assert round_up_start_time(moment, step) == expected


@pytest.mark.parametrize(
    "overrides",
    [
        {"hourly_rate": 0},
        {"grace_minutes": 61},
        {"block_minutes": 0},
        {"block_minutes": 121},
        {"night_multiplier": 0.5},
        {"night_multiplier": 6},
        {"night_charge_time": "25:00"},
        {"hourly_rate": "abc"},
    ],
)
def test_invalid_schedules_are_rejected(overrides):
    with pytest.raises(ValidationError) as exc:
        RateSchedule.from_mapping(overrides)
    assert exc.value.reason == "invalid_schedule"


def test_schedule_serialises_both_ways():
    schedule = RateSchedule.from_mapping({"hourlyRate": 100, "nightChargeTime": "21:00"})

    assert schedule.to_dict()["hourlyRate"] == 100
    assert schedule.to_config()["night_charge_time"] == "21:00"
    assert RateSchedule.from_mapping(schedule.to_config()) == schedule
