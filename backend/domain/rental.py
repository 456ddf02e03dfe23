"""Rental session model and its lifecycle transitions."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ConflictError, ValidationError
from .pricing import ZERO, PricingBlock, PricingResult


class RentalStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class VehicleStatus(str, Enum):
    AVAILABLE = "available"
    RENTED = "rented"
    MAINTENANCE = "maintenance"


class PaymentMethod(str, Enum):
    CASH = "cash"
    UPI = "upi"


class VehicleCondition(str, Enum):
    GOOD = "good"
    MINOR_ISSUES = "minor_issues"
    DAMAGE = "damage"


CANCELLATION_REASONS = (
    "customer_changed_mind",
    "emergency",
    "vehicle_issue",
    "weather_conditions",
    "customer_no_show",
    "staff_error",
    "duplicate_booking",
    "other",
)


def format_rental_id(prefix: str, day: date, number: int) -> str:
    return f"{prefix}-{day.strftime('%Y%m%d')}-{number:03d}"


def rental_id_number(rental_id: str) -> int:
    """Trailing sequence number of ``PREFIX-YYYYMMDD-NNN`` (0 when unparsable)."""
    try:
        return int(rental_id.rsplit("-", 1)[-1])
    except ValueError:
        return 0


@dataclass
class Vehicle:
    vehicle_ref: str
    status: VehicleStatus = VehicleStatus.AVAILABLE
    model: str = ""
    plate_number: str = ""

    @property
    def is_available(self) -> bool:
        return self.status == VehicleStatus.AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicleRef": self.vehicle_ref,
            "status": self.status.value,
            "model": self.model,
            "plateNumber": self.plate_number,
        }


@dataclass
class CancellationInfo:
    cancelled_at: datetime
    reason: str
    within_window: bool
    manual_override: bool = False
    cancelled_by: str = "Staff"
    custom_reason: Optional[str] = None
    staff_notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cancelledAt": self.cancelled_at.isoformat(),
            "reason": self.reason,
            "withinWindow": self.within_window,
            "manualOverride": self.manual_override,
            "cancelledBy": self.cancelled_by,
            "customReason": self.custom_reason,
            "staffNotes": self.staff_notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CancellationInfo":
        return cls(
            cancelled_at=datetime.fromisoformat(data["cancelledAt"]),
            reason=data["reason"],
            within_window=bool(data.get("withinWindow")),
            manual_override=bool(data.get("manualOverride")),
            cancelled_by=data.get("cancelledBy") or "Staff",
            custom_reason=data.get("customReason"),
            staff_notes=data.get("staffNotes"),
        )


@dataclass
class VehicleChange:
    """Audit entry appended on every vehicle substitution."""

    changed_at: datetime
    previous_vehicle_ref: str
    new_vehicle_ref: str
    minutes_since_start: int
    reason: str = "Customer request"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changedAt": self.changed_at.isoformat(),
            "previousVehicleRef": self.previous_vehicle_ref,
            "newVehicleRef": self.new_vehicle_ref,
            "minutesSinceStart": self.minutes_since_start,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VehicleChange":
        return cls(
            changed_at=datetime.fromisoformat(data["changedAt"]),
            previous_vehicle_ref=data["previousVehicleRef"],
            new_vehicle_ref=data["newVehicleRef"],
            minutes_since_start=int(data["minutesSinceStart"]),
            reason=data.get("reason") or "Customer request",
        )


@dataclass
class Rental:
    """One rental session.

    ``final_amount`` is set iff the rental is completed and is never negative.
    ``end_time`` is set on completion; cancellation leaves it empty.
    """

    rental_id: str
    vehicle_ref: str
    customer_ref: str
    start_time: datetime
    status: RentalStatus = RentalStatus.ACTIVE
    end_time: Optional[datetime] = None
    base_amount: Optional[Decimal] = None
    final_amount: Optional[Decimal] = None
    discount_amount: Decimal = ZERO
    additional_charges: Decimal = ZERO
    total_minutes: Optional[int] = None
    pricing_breakdown: List[PricingBlock] = field(default_factory=list)
    payment_method: Optional[PaymentMethod] = None
    vehicle_condition: Optional[VehicleCondition] = None
    return_notes: Optional[str] = None
    damage_notes: Optional[str] = None
    cancellation: Optional[CancellationInfo] = None
    vehicle_changes: List[VehicleChange] = field(default_factory=list)
    created_at: Optional[datetime] = None
    repriced_at: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == RentalStatus.ACTIVE

    def minutes_since_start(self, now: datetime) -> int:
        return int((now - self.start_time).total_seconds() // 60)

    def require_active(self, action: str) -> None:
        if self.status == RentalStatus.ACTIVE:
            return
        raise ConflictError(
            "rental_not_active",
            f"Cannot {action} rental {self.rental_id}: it is already {self.status.value}",
            {"rentalId": self.rental_id, "status": self.status.value},
        )

    def complete(
        self,
        end_time: datetime,
        pricing: PricingResult,
        final_amount: Decimal,
        payment_method: PaymentMethod,
    ) -> None:
        self.require_active("complete")
        self.status = RentalStatus.COMPLETED
        self.end_time = end_time
        self.base_amount = pricing.amount
        self.final_amount = max(ZERO, final_amount)
        self.total_minutes = pricing.total_minutes
        self.pricing_breakdown = list(pricing.breakdown)
        self.payment_method = payment_method

    def cancel(self, info: CancellationInfo) -> None:
        self.require_active("cancel")
        if info.reason not in CANCELLATION_REASONS:
            raise ValidationError(
                "invalid_cancellation_reason",
                f"Unknown cancellation reason '{info.reason}'",
                {"allowed": list(CANCELLATION_REASONS)},
            )
        self.status = RentalStatus.CANCELLED
        self.cancellation = info
        self.final_amount = None

    def change_vehicle(self, change: VehicleChange) -> None:
        self.require_active("change vehicle on")
        if change.new_vehicle_ref == self.vehicle_ref:
            raise ConflictError("same_vehicle", "Cannot change to the same vehicle")
        self.vehicle_changes.append(change)
        self.vehicle_ref = change.new_vehicle_ref

    def apply_reprice(self, pricing: PricingResult, final_amount: Decimal, repriced_at: datetime) -> None:
        self.base_amount = pricing.amount
        self.final_amount = max(ZERO, final_amount)
        self.total_minutes = pricing.total_minutes
        self.pricing_breakdown = list(pricing.breakdown)
        self.repriced_at = repriced_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rentalId": self.rental_id,
            "vehicleRef": self.vehicle_ref,
            "customerRef": self.customer_ref,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "status": self.status.value,
            "baseAmount": _money_str(self.base_amount),
            "finalAmount": _money_str(self.final_amount),
            "discountAmount": str(self.discount_amount),
            "additionalCharges": str(self.additional_charges),
            "totalMinutes": self.total_minutes,
            "pricingBreakdown": [block.to_dict() for block in self.pricing_breakdown],
            "paymentMethod": self.payment_method.value if self.payment_method else None,
            "vehicleCondition": self.vehicle_condition.value if self.vehicle_condition else None,
            "returnNotes": self.return_notes,
            "damageNotes": self.damage_notes,
            "cancellationInfo": self.cancellation.to_dict() if self.cancellation else None,
            "vehicleChangeHistory": [change.to_dict() for change in self.vehicle_changes],
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "repricedAt": self.repriced_at.isoformat() if self.repriced_at else None,
            "notes": self.notes,
        }


def _money_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None
