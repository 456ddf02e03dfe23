"""Daily operations ledger: one record per business day."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .errors import ConflictError
from .pricing import ZERO
from .rental import Rental, RentalStatus


class LedgerStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    ENDED = "ended"


# dedup survivor priority
STATUS_PRIORITY = {
    LedgerStatus.ENDED: 3,
    LedgerStatus.IN_PROGRESS: 2,
    LedgerStatus.NOT_STARTED: 1,
}

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class LedgerSummary:
    total_revenue: Decimal = ZERO
    total_bookings: int = 0
    completed_bookings: int = 0
    active_bookings: int = 0
    cancelled_bookings: int = 0
    new_customers: int = 0
    vehicles_used: int = 0
    average_booking_value: Decimal = ZERO
    operating_hours: Decimal = ZERO
    revenue_per_hour: Decimal = ZERO

    @property
    def data_weight(self) -> Decimal:
        """Tie-breaker when choosing between duplicate ledgers: more data wins."""
        return self.total_revenue + self.total_bookings

    def with_operating_window(self, start: Optional[datetime], end: Optional[datetime]) -> "LedgerSummary":
        if not start or not end:
            return replace(self, operating_hours=ZERO, revenue_per_hour=ZERO)
        seconds = max(0, int((end - start).total_seconds()))
        hours = (Decimal(seconds) / Decimal(3600)).quantize(_CENT, rounding=ROUND_HALF_UP)
        per_hour = ZERO
        if hours > 0:
            per_hour = (self.total_revenue / hours).quantize(_CENT, rounding=ROUND_HALF_UP)
        return replace(self, operating_hours=hours, revenue_per_hour=per_hour)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRevenue": str(self.total_revenue),
            "totalBookings": self.total_bookings,
            "completedBookings": self.completed_bookings,
            "activeBookings": self.active_bookings,
            "cancelledBookings": self.cancelled_bookings,
            "newCustomers": self.new_customers,
            "vehiclesUsed": self.vehicles_used,
            "averageBookingValue": str(self.average_booking_value),
            "operatingHours": str(self.operating_hours),
            "revenuePerHour": str(self.revenue_per_hour),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LedgerSummary":
        data = data or {}
        return cls(
            total_revenue=Decimal(str(data.get("totalRevenue", "0"))).quantize(_CENT),
            total_bookings=int(data.get("totalBookings", 0)),
            completed_bookings=int(data.get("completedBookings", 0)),
            active_bookings=int(data.get("activeBookings", 0)),
            cancelled_bookings=int(data.get("cancelledBookings", 0)),
            new_customers=int(data.get("newCustomers", 0)),
            vehicles_used=int(data.get("vehiclesUsed", 0)),
            average_booking_value=Decimal(str(data.get("averageBookingValue", "0"))).quantize(_CENT),
            operating_hours=Decimal(str(data.get("operatingHours", "0"))).quantize(_CENT),
            revenue_per_hour=Decimal(str(data.get("revenuePerHour", "0"))).quantize(_CENT),
        )


def summarize_rentals(rentals: Iterable[Rental], returning_customers: Set[str] = frozenset()) -> LedgerSummary:
    """Derive a summary from rental records only.

    Revenue counts completed rentals alone; cancelled ones contribute nothing
    even if a stale ``final_amount`` is still attached.
    """
    rentals = list(rentals)
    completed = [r for r in rentals if r.status == RentalStatus.COMPLETED]
    revenue = sum((r.final_amount or ZERO for r in completed), ZERO).quantize(_CENT)
    average = ZERO
    if completed:
        average = (revenue / len(completed)).quantize(_CENT, rounding=ROUND_HALF_UP)
    vehicles = {r.vehicle_ref for r in rentals if r.status != RentalStatus.CANCELLED}
    customers = {r.customer_ref for r in rentals}
    return LedgerSummary(
        total_revenue=revenue,
        total_bookings=len(rentals),
        completed_bookings=len(completed),
        active_bookings=sum(1 for r in rentals if r.status == RentalStatus.ACTIVE),
        cancelled_bookings=sum(1 for r in rentals if r.status == RentalStatus.CANCELLED),
        new_customers=len(customers - set(returning_customers)),
        vehicles_used=len(vehicles),
        average_booking_value=average,
    )


@dataclass
class RestartEntry:
    restarted_at: datetime
    restarted_by: str
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restartedAt": self.restarted_at.isoformat(),
            "restartedBy": self.restarted_by,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RestartEntry":
        return cls(
            restarted_at=datetime.fromisoformat(data["restartedAt"]),
            restarted_by=data["restartedBy"],
            reason=data.get("reason", ""),
        )


@dataclass
class DailyLedger:
    """``not_started -> in_progress -> ended``, with ``ended -> in_progress`` via restart."""

    ledger_id: str
    date: date
    status: LedgerStatus = LedgerStatus.NOT_STARTED
    day_started: bool = False
    business_start_time: Optional[datetime] = None
    business_end_time: Optional[datetime] = None
    started_by: Optional[str] = None
    start_notes: str = ""
    ended_by: Optional[str] = None
    end_notes: str = ""
    auto_ended: bool = False
    summary: LedgerSummary = field(default_factory=LedgerSummary)
    restart_count: int = 0
    restart_history: List[RestartEntry] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def start(self, staff: str, notes: str, now: datetime) -> None:
        if self.status == LedgerStatus.IN_PROGRESS:
            raise ConflictError("day_already_started", "Day has already been started")
        if self.status == LedgerStatus.ENDED:
            raise ConflictError(
                "day_already_ended",
                "Day has already been ended; restart it instead",
            )
        self.day_started = True
        self.business_start_time = now
        self.started_by = staff
        self.start_notes = notes or ""
        self.status = LedgerStatus.IN_PROGRESS

    def end(self, staff: str, notes: str, now: datetime, summary: LedgerSummary, is_auto: bool = False) -> None:
        if self.status == LedgerStatus.NOT_STARTED:
            raise ConflictError("day_not_started", "Day has not been started yet")
        if self.status == LedgerStatus.ENDED:
            raise ConflictError("day_already_ended", "Day has already been ended")
        self.business_end_time = now
        self.ended_by = staff
        self.end_notes = notes or ""
        self.auto_ended = is_auto
        self.status = LedgerStatus.ENDED
        self.summary = summary.with_operating_window(self.business_start_time, now)

    def restart(self, staff: str, reason: str, now: datetime) -> None:
        if self.status != LedgerStatus.ENDED:
            raise ConflictError("day_not_ended", "Day has not been ended yet")
        self.restart_count += 1
        self.restart_history.append(RestartEntry(restarted_at=now, restarted_by=staff, reason=reason or ""))
        self.business_end_time = None
        self.ended_by = None
        self.end_notes = ""
        self.auto_ended = False
        self.status = LedgerStatus.IN_PROGRESS

    def window(self, day_start: datetime, day_end: datetime) -> Tuple[datetime, datetime]:
        """Business hours when the day was started, else the whole calendar day.

        A day still in progress is open-ended up to the calendar day end.
        """
        if self.day_started and self.business_start_time:
            return self.business_start_time, self.business_end_time or day_end
        return day_start, day_end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ledgerId": self.ledger_id,
            "date": self.date.isoformat(),
            "status": self.status.value,
            "dayStarted": self.day_started,
            "businessStartTime": self.business_start_time.isoformat() if self.business_start_time else None,
            "businessEndTime": self.business_end_time.isoformat() if self.business_end_time else None,
            "startedBy": self.started_by,
            "startNotes": self.start_notes,
            "endedBy": self.ended_by,
            "endNotes": self.end_notes,
            "autoEnded": self.auto_ended,
            "summary": self.summary.to_dict(),
            "restartCount": self.restart_count,
            "restartHistory": [entry.to_dict() for entry in self.restart_history],
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
