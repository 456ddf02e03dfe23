"""Read-only pricing: quotes, previews and worked examples for the pricing UI."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from application.clock import BusinessClock
from application.rate_provider import ConfigRateScheduleProvider
from domain.errors import NotFoundError, ValidationError
from domain.pricing import ZERO, PricingResult, apply_adjustments, price
from domain.rate_schedule import RateSchedule, to_money
from domain.rental import RentalStatus
from infrastructure.repository import RentalRepository

DAY_EXAMPLE_MINUTES = (30, 60, 90, 120, 180)
NIGHT_EXAMPLE_MINUTES = (60, 90, 120)
DAY_EXAMPLE_START = time(14, 0)
NIGHT_EXAMPLE_START = time(21, 30)
MAX_PREVIEW_MINUTES = 7 * 24 * 60


def _quote_payload(result: PricingResult, discount: Decimal, additional: Decimal) -> Dict[str, Any]:
    payload = result.to_dict()
    payload["baseAmount"] = str(result.amount)
    payload["discountAmount"] = str(discount)
    payload["additionalCharges"] = str(additional)
    payload["finalAmount"] = str(apply_adjustments(result.amount, discount, additional))
    return payload


class PricingService:
    def __init__(
        self,
        rate_provider: ConfigRateScheduleProvider,
        clock: BusinessClock,
        repository: RentalRepository,
    ):
        self.rate_provider = rate_provider
        self.clock = clock
        self.repository = repository

    def current_schedule(self) -> RateSchedule:
        return self.rate_provider.get_rate_schedule()

    def quote_range(
        self,
        start: datetime,
        end: datetime,
        discount_amount: Any = ZERO,
        additional_charges: Any = ZERO,
        schedule: Optional[RateSchedule] = None,
    ) -> Dict[str, Any]:
        """Price an arbitrary (start, end) pair; ``end < start`` quotes zero."""
        discount, additional = to_money(discount_amount), to_money(additional_charges)
        if discount < 0 or additional < 0:
            raise ValidationError("invalid_adjustment", "Adjustments cannot be negative")
        schedule = schedule or self.current_schedule()
        result = price(self.clock.localize(start), self.clock.localize(end), schedule, self.clock.tz)
        return _quote_payload(result, discount, additional)

    def quote_rental(self, rental_id: str) -> Dict[str, Any]:
        """Amount so far for an active rental, stored amounts for a finished one."""
        rental = self.repository.get_rental(rental_id)
        if rental is None:
            raise NotFoundError("rental_not_found", f"Rental {rental_id} not found")

        base = {"rentalId": rental.rental_id, "startTime": rental.start_time.isoformat()}
        if rental.status == RentalStatus.COMPLETED:
            return {
                **base,
                "status": "completed",
                "endTime": rental.end_time.isoformat() if rental.end_time else None,
                "amount": str(rental.base_amount if rental.base_amount is not None else ZERO),
                "baseAmount": str(rental.base_amount if rental.base_amount is not None else ZERO),
                "finalAmount": str(rental.final_amount if rental.final_amount is not None else ZERO),
                "totalMinutes": rental.total_minutes or 0,
                "breakdown": [block.to_dict() for block in rental.pricing_breakdown],
            }
        if rental.status == RentalStatus.CANCELLED:
            return {**base, "status": "cancelled", "amount": str(ZERO), "finalAmount": None, "breakdown": []}

        now = self.clock.now()
        if rental.start_time > now:
            minutes_until = int((rental.start_time - now).total_seconds() // 60)
            return {
                **base,
                "status": "pre-start",
                "minutesUntilStart": minutes_until,
                "amount": str(ZERO),
                "finalAmount": str(ZERO),
                "totalMinutes": 0,
                "breakdown": [],
            }

        payload = self.quote_range(rental.start_time, now, rental.discount_amount, rental.additional_charges)
        payload.update(base)
        payload["status"] = "just-started" if payload["totalMinutes"] == 0 else "active"
        payload["asOf"] = now.isoformat()
        return payload

    def preview(self, duration_minutes: int, start: Optional[datetime] = None) -> Dict[str, Any]:
        if not 0 < duration_minutes <= MAX_PREVIEW_MINUTES:
            raise ValidationError(
                "invalid_duration",
                f"Duration must be between 1 and {MAX_PREVIEW_MINUTES} minutes",
            )
        begin = self.clock.localize(start) if start else self.clock.now().replace(second=0, microsecond=0)
        payload = self.quote_range(begin, begin + timedelta(minutes=duration_minutes))
        payload["durationMinutes"] = duration_minutes
        return payload

    def examples(self, day: Optional[date] = None) -> Dict[str, Any]:
        schedule = self.current_schedule()
        day = day or self.clock.today()
        return {
            "schedule": schedule.to_dict(),
            "halfRate": str(schedule.half_rate),
            "dayExamples": self._examples_from(day, DAY_EXAMPLE_START, DAY_EXAMPLE_MINUTES, schedule),
            "nightExamples": self._examples_from(day, NIGHT_EXAMPLE_START, NIGHT_EXAMPLE_MINUTES, schedule),
        }

    def _examples_from(
        self, day: date, start_at: time, durations, schedule: RateSchedule
    ) -> List[Dict[str, Any]]:
        start = datetime.combine(day, start_at, tzinfo=self.clock.tz)
        examples = []
        for minutes in durations:
            result = price(start, start + timedelta(minutes=minutes), schedule, self.clock.tz)
            examples.append(
                {
                    "durationMinutes": minutes,
                    "startTime": start.isoformat(),
                    "amount": str(result.amount),
                    "summary": result.summary,
                    "breakdown": [block.to_dict() for block in result.breakdown],
                }
            )
        return examples
