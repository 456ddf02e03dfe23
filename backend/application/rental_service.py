"""Rental lifecycle workflows: start, complete, cancel and vehicle substitution."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.config import AppConfig
from application.blacklist import BlacklistGate
from application.clock import BusinessClock
from application.events import AsyncEventBus, EventType, OperationEvent
from application.rate_provider import ConfigRateScheduleProvider
from domain.errors import ConflictError, ConsistencyWarning, NotFoundError, ValidationError
from domain.pricing import ZERO, apply_adjustments, price, round_up_start_time
from domain.rate_schedule import to_money
from domain.rental import (
    CANCELLATION_REASONS,
    CancellationInfo,
    PaymentMethod,
    Rental,
    RentalStatus,
    VehicleChange,
    VehicleCondition,
    VehicleStatus,
    format_rental_id,
    rental_id_number,
)
from infrastructure.repository import RentalRepository

logger = logging.getLogger(__name__)

ALLOWED_ROUNDING = (1, 5, 10, 15, 30)
ID_ATTEMPTS = 5


@dataclass
class StartDetails:
    start_time: Optional[datetime] = None
    round_to_minutes: Optional[int] = None
    notes: Optional[str] = None


@dataclass
class CompletionDetails:
    payment_method: PaymentMethod
    end_time: Optional[datetime] = None
    discount_amount: Decimal = ZERO
    additional_charges: Decimal = ZERO
    vehicle_condition: VehicleCondition = VehicleCondition.GOOD
    return_notes: Optional[str] = None
    damage_notes: Optional[str] = None


@dataclass
class CancellationRequest:
    reason: str
    manual_override: bool = False
    custom_reason: Optional[str] = None
    staff_notes: Optional[str] = None
    cancelled_by: str = "Staff"


@dataclass
class RentalOutcome:
    """Successful transition plus anything the caller must be told about."""

    rental: Rental
    warnings: List[ConsistencyWarning] = field(default_factory=list)
    customer_warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rental": self.rental.to_dict(),
            "warnings": [warning.to_dict() for warning in self.warnings],
            "customerWarning": self.customer_warning,
        }


class RentalService:
    def __init__(
        self,
        config: AppConfig,
        repository: RentalRepository,
        rate_provider: ConfigRateScheduleProvider,
        blacklist_gate: BlacklistGate,
        clock: BusinessClock,
        event_bus: Optional[AsyncEventBus] = None,
    ):
        self.repo = repository
        self.rate_provider = rate_provider
        self.blacklist_gate = blacklist_gate
        self.clock = clock
        self.event_bus = event_bus
        self.update_config(config)

    def update_config(self, config: AppConfig) -> None:
        self.config = config
        rental_cfg = config.rental
        retry_cfg = config.retry
        self.id_prefix = str(rental_cfg.get("id_prefix", "MRT"))
        self.round_start_minutes = int(rental_cfg.get("round_start_minutes", 5))
        self.cancellation_window_minutes = int(rental_cfg.get("cancellation_window_minutes", 120))
        self.vehicle_change_window_minutes = int(rental_cfg.get("vehicle_change_window_minutes", 15))
        self.flag_attempts = max(1, int(retry_cfg.get("vehicle_status_attempts", 3)))
        self.flag_backoff_seconds = float(retry_cfg.get("vehicle_status_backoff_ms", 50)) / 1000

    # Queries -------------------------------------------------------------
    def get_rental(self, rental_id: str) -> Rental:
        rental = self.repo.get_rental(rental_id)
        if rental is None:
            raise NotFoundError("rental_not_found", f"Rental {rental_id} not found")
        return rental

    def list_rentals(self, status: Optional[RentalStatus] = None) -> List[Rental]:
        return self.repo.list_rentals(status=status)

    # Start ---------------------------------------------------------------
    def start_rental(
        self,
        vehicle_ref: str,
        customer_ref: str,
        details: Optional[StartDetails] = None,
    ) -> RentalOutcome:
        details = details or StartDetails()
        if not vehicle_ref or not customer_ref:
            raise ValidationError("missing_field", "vehicleRef and customerRef are required")

        verdict = self.blacklist_gate.check_customer(customer_ref)
        if not verdict.can_book:
            raise ConflictError(
                "customer_blocked",
                verdict.reason or "Customer is not allowed to book",
                {"customerRef": customer_ref},
            )

        now = self.clock.now()
        start_time = self._resolve_start_time(now, details)
        day_code = now.date()
        id_stem = format_rental_id(self.id_prefix, day_code, 0)[:-3]
        number = max((rental_id_number(i) for i in self.repo.list_rental_ids(id_stem)), default=0) + 1

        for _ in range(ID_ATTEMPTS):
            rental = Rental(
                rental_id=format_rental_id(self.id_prefix, day_code, number),
                vehicle_ref=vehicle_ref,
                customer_ref=customer_ref,
                start_time=start_time,
                created_at=now,
                notes=details.notes,
            )
            try:
                self.repo.create_rental(rental)
                break
            except ConflictError as exc:
                if exc.reason != "rental_id_collision":
                    raise
                number += 1
        else:
            raise ConflictError("rental_id_collision", "Could not allocate a unique rental id, retry the request")

        logger.info("Rental %s started on %s for %s", rental.rental_id, vehicle_ref, customer_ref)
        self._publish(EventType.RENTAL_STARTED, rental)
        return RentalOutcome(rental=rental, customer_warning=verdict.warning)

    def _resolve_start_time(self, now: datetime, details: StartDetails) -> datetime:
        if details.start_time is not None:
            return self.clock.localize(details.start_time).replace(microsecond=0)
        round_to = details.round_to_minutes if details.round_to_minutes is not None else self.round_start_minutes
        if round_to not in ALLOWED_ROUNDING:
            raise ValidationError(
                "invalid_rounding",
                f"Start time rounding must be one of {list(ALLOWED_ROUNDING)}",
            )
        return round_up_start_time(now, round_to)

    # Complete ------------------------------------------------------------
    def complete_rental(self, rental_id: str, details: CompletionDetails) -> RentalOutcome:
        rental = self.get_rental(rental_id)
        rental.require_active("complete")

        discount = to_money(details.discount_amount)
        additional = to_money(details.additional_charges)
        if discount < 0 or additional < 0:
            raise ValidationError("invalid_adjustment", "Discount and additional charges cannot be negative")

        end_time = self.clock.localize(details.end_time) if details.end_time else self.clock.now()
        # schedule in effect now, not the one from when the rental started
        schedule = self.rate_provider.get_rate_schedule()
        pricing = price(rental.start_time, end_time, schedule, self.clock.tz)

        rental.discount_amount = discount
        rental.additional_charges = additional
        rental.vehicle_condition = details.vehicle_condition
        rental.return_notes = details.return_notes
        rental.damage_notes = details.damage_notes
        rental.complete(end_time, pricing, apply_adjustments(pricing.amount, discount, additional), details.payment_method)

        if not self.repo.update_rental_if_status(rental, RentalStatus.ACTIVE):
            raise ConflictError("rental_not_active", f"Rental {rental_id} is no longer active")

        logger.info("Rental %s completed: %s (%s)", rental_id, rental.final_amount, pricing.summary)
        warnings = self._release_vehicle(rental, rental.vehicle_ref)
        self._publish(EventType.RENTAL_COMPLETED, rental)
        return RentalOutcome(rental=rental, warnings=warnings)

    # Cancel --------------------------------------------------------------
    def cancel_rental(self, rental_id: str, request: CancellationRequest) -> RentalOutcome:
        rental = self.get_rental(rental_id)
        rental.require_active("cancel")
        if request.reason not in CANCELLATION_REASONS:
            raise ValidationError(
                "invalid_cancellation_reason",
                f"Unknown cancellation reason '{request.reason}'",
                {"allowed": list(CANCELLATION_REASONS)},
            )

        now = self.clock.now()
        within_window = self.is_within_cancellation_window(rental, now)
        if not within_window and not request.manual_override:
            raise ConflictError(
                "outside_cancellation_window",
                f"Rental can only be cancelled within {self.cancellation_window_minutes} minutes of its start",
                {"minutesSinceStart": rental.minutes_since_start(now)},
            )

        rental.cancel(
            CancellationInfo(
                cancelled_at=now,
                reason=request.reason,
                within_window=within_window,
                manual_override=request.manual_override,
                cancelled_by=request.cancelled_by or "Staff",
                custom_reason=request.custom_reason,
                staff_notes=request.staff_notes,
            )
        )
        if not self.repo.update_rental_if_status(rental, RentalStatus.ACTIVE):
            raise ConflictError("rental_not_active", f"Rental {rental_id} is no longer active")

        logger.info("Rental %s cancelled (%s, override=%s)", rental_id, request.reason, request.manual_override)
        warnings = self._release_vehicle(rental, rental.vehicle_ref)
        self._publish(EventType.RENTAL_CANCELLED, rental)
        return RentalOutcome(rental=rental, warnings=warnings)

    def is_within_cancellation_window(self, rental: Rental, now: datetime) -> bool:
        if rental.start_time > now:
            return True
        return rental.minutes_since_start(now) <= self.cancellation_window_minutes

    # Vehicle substitution ------------------------------------------------
    def change_vehicle(self, rental_id: str, new_vehicle_ref: str, reason: Optional[str] = None) -> RentalOutcome:
        if not new_vehicle_ref:
            raise ValidationError("missing_field", "newVehicleRef is required")
        rental = self.get_rental(rental_id)
        rental.require_active("change vehicle on")

        now = self.clock.now()
        minutes = rental.minutes_since_start(now)
        if rental.start_time <= now and minutes > self.vehicle_change_window_minutes:
            raise ConflictError(
                "vehicle_change_window_expired",
                f"Vehicle can only be changed within {self.vehicle_change_window_minutes} minutes of the start",
                {"minutesSinceStart": minutes},
            )

        previous_ref = rental.vehicle_ref
        rental.change_vehicle(
            VehicleChange(
                changed_at=now,
                previous_vehicle_ref=previous_ref,
                new_vehicle_ref=new_vehicle_ref,
                minutes_since_start=max(0, minutes),
                reason=reason or "Customer request",
            )
        )
        self.repo.swap_rental_vehicle(rental, previous_ref)

        logger.info("Rental %s moved from %s to %s", rental_id, previous_ref, new_vehicle_ref)
        self._publish(EventType.VEHICLE_CHANGED, rental, {"previousVehicleRef": previous_ref})
        return RentalOutcome(rental=rental)

    # Secondary write -----------------------------------------------------
    def _release_vehicle(self, rental: Rental, vehicle_ref: str) -> List[ConsistencyWarning]:
        """Flip the vehicle back to available, retrying with read-after-write verification.

        The rental transition is already committed; exhaustion yields a warning.
        """
        expected = VehicleStatus.AVAILABLE
        last_error = "status not applied"
        for attempt in range(1, self.flag_attempts + 1):
            try:
                self.repo.set_vehicle_status(vehicle_ref, expected)
                vehicle = self.repo.get_vehicle(vehicle_ref)
                if vehicle is not None and vehicle.status == expected:
                    return []
                last_error = f"read back {vehicle.status.value if vehicle else 'missing vehicle'}"
            except Exception as exc:  # any store fault counts as a failed attempt
                last_error = str(exc) or exc.__class__.__name__
            logger.debug("Vehicle %s flag attempt %d failed: %s", vehicle_ref, attempt, last_error)
            if attempt < self.flag_attempts and self.flag_backoff_seconds > 0:
                time.sleep(self.flag_backoff_seconds * attempt)

        warning = ConsistencyWarning(
            rental_id=rental.rental_id,
            vehicle_ref=vehicle_ref,
            expected_status=expected.value,
            attempts=self.flag_attempts,
            message=f"Vehicle status update failed after {self.flag_attempts} attempts: {last_error}",
            occurred_at=self.clock.now(),
        )
        logger.warning(
            "Consistency warning: rental %s vehicle %s should be %s (%d attempts): %s",
            rental.rental_id, vehicle_ref, expected.value, self.flag_attempts, last_error,
        )
        if self.event_bus:
            self.event_bus.publish_sync(
                OperationEvent(EventType.CONSISTENCY_WARNING, rental.rental_id, warning.to_dict())
            )
        return [warning]

    def _publish(self, event_type: EventType, rental: Rental, extra: Optional[Dict[str, Any]] = None) -> None:
        if not self.event_bus:
            return
        payload = {"rental": rental.to_dict()}
        if extra:
            payload.update(extra)
        self.event_bus.publish_sync(OperationEvent(event_type, rental.rental_id, payload))
