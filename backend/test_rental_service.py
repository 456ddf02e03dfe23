"""Rental lifecycle: start, complete, cancel, vehicle change and the vehicle flag write."""
import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import FakeBlacklistGate, ist, make_config
from application.blacklist import BlacklistVerdict
from application.events import EventType
from application.ledger_service import LedgerService
from application.reconciliation_service import ReconciliationService
from application.rental_service import (
    CancellationRequest,
    CompletionDetails,
    RentalService,
    StartDetails,
)
from domain.errors import ConflictError, NotFoundError, ValidationError
from domain.rental import PaymentMethod, RentalStatus, Vehicle, VehicleStatus
from infrastructure.memory_store import InMemoryRentalRepository


class RecordingBus:
    def __init__(self):
        self.events = []

    def publish_sync(self, event):
        self.events.append(event)
        return True


class FlakyVehicleRepository(InMemoryRentalRepository):
    """Fails the next ``failures`` attempts to mark a vehicle available."""

    def __init__(self, failures=0):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def set_vehicle_status(self, vehicle_ref, status):
        if status == VehicleStatus.AVAILABLE:
            self.attempts += 1
            if self.failures:
                self.failures -= 1
                raise RuntimeError("vehicle store timeout")
        super().set_vehicle_status(vehicle_ref, status)


class StaleIdRepository(InMemoryRentalRepository):
    """Never reports existing ids, so the service has to recover from collisions."""

    def list_rental_ids(self, id_prefix):
        return []


def _seed(repo, refs=("V1", "V2", "V3")):
    for ref in refs:
        repo.save_vehicle(Vehicle(vehicle_ref=ref))
    return repo


def _start(service, vehicle="V1", customer="C1", at=None):
    details = StartDetails(start_time=at) if at else None
    return service.start_rental(vehicle, customer, details).rental


# Start -------------------------------------------------------------------
def test_start_rounds_up_and_marks_vehicle_rented(rental_service, repo):
    outcome = rental_service.start_rental("V1", "C1")

    rental = outcome.rental
    assert rental.rental_id == "MRT-20260310-001"
    assert rental.start_time == ist(2026, 3, 10, 10, 5)
    assert rental.status == RentalStatus.ACTIVE
    assert repo.get_vehicle("V1").status == VehicleStatus.RENTED
    assert outcome.customer_warning is None


def test_rental_ids_increase_within_the_day(rental_service):
    first = _start(rental_service, "V1", "C1")
    second = _start(rental_service, "V2", "C2")

    assert first.rental_id == "MRT-20260310-001"
    assert second.rental_id == "MRT-20260310-002"


def test_custom_rounding_and_explicit_start(rental_service, clock):
    clock.freeze(ist(2026, 3, 10, 10, 7))
    rounded = rental_service.start_rental("V1", "C1", StartDetails(round_to_minutes=15)).rental
    explicit = _start(rental_service, "V2", "C2", at=ist(2026, 3, 10, 9, 45))

    assert rounded.start_time == ist(2026, 3, 10, 10, 15)
    assert explicit.start_time == ist(2026, 3, 10, 9, 45)


def test_invalid_rounding_is_rejected(rental_service, repo):
    with pytest.raises(ValidationError) as exc:
        rental_service.start_rental("V1", "C1", StartDetails(round_to_minutes=7))

    assert exc.value.reason == "invalid_rounding"
    assert repo.get_vehicle("V1").status == VehicleStatus.AVAILABLE


def test_missing_refs_are_rejected(rental_service):
    with pytest.raises(ValidationError) as exc:
        rental_service.start_rental("V1", "")
    assert exc.value.reason == "missing_field"


def test_unavailable_vehicle_conflicts(rental_service, repo):
    _start(rental_service, "V1", "C1")
    repo.set_vehicle_status("V2", VehicleStatus.MAINTENANCE)

    for vehicle in ("V1", "V2"):
        with pytest.raises(ConflictError) as exc:
            rental_service.start_rental(vehicle, "C2")
        assert exc.value.reason == "vehicle_unavailable"
    assert len(repo.list_rentals()) == 1


def test_unknown_vehicle_is_not_found(rental_service):
    with pytest.raises(NotFoundError) as exc:
        rental_service.start_rental("NOPE", "C1")
    assert exc.value.reason == "vehicle_not_found"


def test_blocked_customer_cannot_start(rental_service, gate, repo):
    gate.verdicts["BAD"] = BlacklistVerdict(can_book=False, reason="Unpaid damages")

    with pytest.raises(ConflictError) as exc:
        rental_service.start_rental("V1", "BAD")

    assert exc.value.reason == "customer_blocked"
    assert exc.value.message == "Unpaid damages"
    assert repo.get_vehicle("V1").status == VehicleStatus.AVAILABLE


def test_warned_customer_starts_with_warning(rental_service, gate):
    gate.verdicts["LATE"] = BlacklistVerdict(can_book=True, warning="Returned late twice")

    outcome = rental_service.start_rental("V1", "LATE")

    assert outcome.customer_warning == "Returned late twice"
    assert outcome.to_dict()["customerWarning"] == "Returned late twice"


def test_id_collision_is_retried(config, rate_provider, clock):
    repo = _seed(StaleIdRepository())
    service = RentalService(config, repo, rate_provider, FakeBlacklistGate(), clock)

    first = _start(service, "V1", "C1")
    second = _start(service, "V2", "C2")

    assert first.rental_id == "MRT-20260310-001"
    assert second.rental_id == "MRT-20260310-002"


def test_concurrent_starts_claim_the_vehicle_once(rental_service, repo):
    barrier = threading.Barrier(6)
    results = []

    def worker(customer):
        barrier.wait()
        try:
            results.append(rental_service.start_rental("V1", customer).rental.rental_id)
        except ConflictError as exc:
            results.append(exc.reason)

    threads = [threading.Thread(target=worker, args=(f"C{i}",)) for i in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for r in results if r.startswith("MRT-")) == 1
    assert results.count("vehicle_unavailable") == 5
    assert len(repo.list_rentals(status=RentalStatus.ACTIVE)) == 1


# Complete ----------------------------------------------------------------
def test_complete_prices_and_releases_vehicle(rental_service, repo, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 11, 30))

    outcome = rental_service.complete_rental(
        rental.rental_id,
        CompletionDetails(
            payment_method=PaymentMethod.UPI,
            discount_amount=Decimal("10"),
            additional_charges=Decimal("5"),
        ),
    )

    done = outcome.rental
    assert outcome.warnings == []
    assert done.status == RentalStatus.COMPLETED
    assert done.base_amount == Decimal("120.00")
    assert done.final_amount == Decimal("115.00")
    assert done.total_minutes == 90
    assert done.end_time == ist(2026, 3, 10, 11, 30)
    assert len(done.pricing_breakdown) == 2
    assert repo.get_rental(rental.rental_id).final_amount == Decimal("115.00")
    assert repo.get_vehicle("V1").status == VehicleStatus.AVAILABLE


def test_complete_uses_schedule_in_effect_at_completion(rental_service, rate_provider, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    rate_provider.update_config(make_config(hourly_rate=100))
    clock.freeze(ist(2026, 3, 10, 11, 30))

    done = rental_service.complete_rental(rental.rental_id, CompletionDetails(PaymentMethod.CASH)).rental

    assert done.final_amount == Decimal("150.00")


def test_complete_twice_conflicts(rental_service, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 11, 0))
    rental_service.complete_rental(rental.rental_id, CompletionDetails(PaymentMethod.CASH))

    with pytest.raises(ConflictError) as exc:
        rental_service.complete_rental(rental.rental_id, CompletionDetails(PaymentMethod.CASH))
    assert exc.value.reason == "rental_not_active"


def test_negative_adjustments_are_rejected(rental_service):
    rental = _start(rental_service)

    with pytest.raises(ValidationError) as exc:
        rental_service.complete_rental(
            rental.rental_id, CompletionDetails(PaymentMethod.CASH, discount_amount=Decimal("-1"))
        )
    assert exc.value.reason == "invalid_adjustment"


def test_discount_larger_than_price_clamps_to_zero(rental_service, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 10, 30))

    done = rental_service.complete_rental(
        rental.rental_id, CompletionDetails(PaymentMethod.CASH, discount_amount=Decimal("500"))
    ).rental

    assert done.final_amount == Decimal("0.00")


def test_unknown_rental_is_not_found(rental_service):
    with pytest.raises(NotFoundError) as exc:
        rental_service.complete_rental("MRT-20260310-999", CompletionDetails(PaymentMethod.CASH))
    assert exc.value.reason == "rental_not_found"


def test_concurrent_completion_succeeds_once(rental_service, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 11, 0))
    barrier = threading.Barrier(4)
    outcomes = []

    def worker():
        barrier.wait()
        try:
            rental_service.complete_rental(rental.rental_id, CompletionDetails(PaymentMethod.CASH))
            outcomes.append("ok")
        except ConflictError as exc:
            outcomes.append(exc.reason)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("rental_not_active") == 3


# Cancel ------------------------------------------------------------------
def test_cancel_within_window(rental_service, repo, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 11, 0))

    done = rental_service.cancel_rental(rental.rental_id, CancellationRequest(reason="emergency")).rental

    assert done.status == RentalStatus.CANCELLED
    assert done.final_amount is None
    assert done.end_time is None
    assert done.cancellation.within_window
    assert not done.cancellation.manual_override
    assert repo.get_vehicle("V1").status == VehicleStatus.AVAILABLE


def test_cancel_outside_window_needs_override(rental_service, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 12, 1))

    with pytest.raises(ConflictError) as exc:
        rental_service.cancel_rental(rental.rental_id, CancellationRequest(reason="emergency"))
    assert exc.value.reason == "outside_cancellation_window"

    done = rental_service.cancel_rental(
        rental.rental_id,
        CancellationRequest(reason="other", manual_override=True, custom_reason="Manager approval"),
    ).rental
    assert done.status == RentalStatus.CANCELLED
    assert not done.cancellation.within_window
    assert done.cancellation.manual_override
    assert done.cancellation.custom_reason == "Manager approval"


def test_cancel_exactly_at_window_edge(rental_service, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 12, 0))

    done = rental_service.cancel_rental(rental.rental_id, CancellationRequest(reason="emergency")).rental
    assert done.cancellation.within_window


def test_future_start_counts_as_within_window(rental_service):
    rental = _start(rental_service, at=ist(2026, 3, 10, 14, 0))

    done = rental_service.cancel_rental(rental.rental_id, CancellationRequest(reason="customer_no_show")).rental
    assert done.cancellation.within_window


def test_unknown_cancellation_reason(rental_service, repo):
    rental = _start(rental_service)

    with pytest.raises(ValidationError) as exc:
        rental_service.cancel_rental(rental.rental_id, CancellationRequest(reason="bored"))

    assert exc.value.reason == "invalid_cancellation_reason"
    assert repo.get_rental(rental.rental_id).status == RentalStatus.ACTIVE


def test_cancel_completed_rental_conflicts(rental_service, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 10, 30))
    rental_service.complete_rental(rental.rental_id, CompletionDetails(PaymentMethod.CASH))

    with pytest.raises(ConflictError) as exc:
        rental_service.cancel_rental(rental.rental_id, CancellationRequest(reason="emergency"))
    assert exc.value.reason == "rental_not_active"


# Vehicle change ----------------------------------------------------------
def test_change_vehicle_within_window(rental_service, repo, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 10, 10))

    done = rental_service.change_vehicle(rental.rental_id, "V2", "Flat tyre").rental

    assert done.vehicle_ref == "V2"
    assert [(c.previous_vehicle_ref, c.new_vehicle_ref, c.minutes_since_start) for c in done.vehicle_changes] == [
        ("V1", "V2", 10)
    ]
    assert repo.get_vehicle("V1").status == VehicleStatus.AVAILABLE
    assert repo.get_vehicle("V2").status == VehicleStatus.RENTED
    assert repo.get_rental(rental.rental_id).vehicle_ref == "V2"


def test_change_vehicle_after_window_conflicts(rental_service, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 10, 16))

    with pytest.raises(ConflictError) as exc:
        rental_service.change_vehicle(rental.rental_id, "V2")
    assert exc.value.reason == "vehicle_change_window_expired"


def test_change_to_unavailable_vehicle_leaves_rental_untouched(rental_service, repo, clock):
    rental = _start(rental_service, at=ist(2026, 3, 10, 10, 0))
    repo.set_vehicle_status("V2", VehicleStatus.MAINTENANCE)
    clock.freeze(ist(2026, 3, 10, 10, 5))

    with pytest.raises(ConflictError) as exc:
        rental_service.change_vehicle(rental.rental_id, "V2")

    assert exc.value.reason == "vehicle_unavailable"
    stored = repo.get_rental(rental.rental_id)
    assert stored.vehicle_ref == "V1"
    assert stored.vehicle_changes == []
    assert repo.get_vehicle("V1").status == VehicleStatus.RENTED


def test_change_to_same_vehicle_conflicts(rental_service):
    rental = _start(rental_service)

    with pytest.raises(ConflictError) as exc:
        rental_service.change_vehicle(rental.rental_id, "V1")
    assert exc.value.reason == "same_vehicle"


# Vehicle flag write ------------------------------------------------------
def test_failed_vehicle_flag_yields_consistency_warning(config, rate_provider, clock):
    repo = _seed(FlakyVehicleRepository(failures=10))
    bus = RecordingBus()
    service = RentalService(config, repo, rate_provider, FakeBlacklistGate(), clock, event_bus=bus)
    rental = _start(service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 11, 0))

    outcome = service.complete_rental(rental.rental_id, CompletionDetails(PaymentMethod.CASH))

    assert outcome.rental.status == RentalStatus.COMPLETED
    assert repo.get_rental(rental.rental_id).status == RentalStatus.COMPLETED
    assert len(outcome.warnings) == 1
    warning = outcome.warnings[0]
    assert (warning.rental_id, warning.vehicle_ref, warning.expected_status) == (rental.rental_id, "V1", "available")
    assert warning.attempts == 3
    assert repo.attempts == 3
    assert repo.get_vehicle("V1").status == VehicleStatus.RENTED
    assert EventType.CONSISTENCY_WARNING in [event.event_type for event in bus.events]

    repo.failures = 0
    reconciliation = ReconciliationService(repo, LedgerService(config, repo, clock), rate_provider, clock)
    report = reconciliation.repair_vehicle_flags()

    assert report["corrections"] == [{"vehicleRef": "V1", "from": "rented", "to": "available"}]
    assert repo.get_vehicle("V1").status == VehicleStatus.AVAILABLE


def test_transient_flag_failure_is_retried(config, rate_provider, clock):
    repo = _seed(FlakyVehicleRepository(failures=1))
    service = RentalService(config, repo, rate_provider, FakeBlacklistGate(), clock)
    rental = _start(service, at=ist(2026, 3, 10, 10, 0))
    clock.advance(timedelta(minutes=30))

    outcome = service.cancel_rental(rental.rental_id, CancellationRequest(reason="emergency"))

    assert outcome.warnings == []
    assert repo.attempts == 2
    assert repo.get_vehicle("V1").status == VehicleStatus.AVAILABLE


def test_lifecycle_events_are_published(config, repo, rate_provider, gate, clock):
    bus = RecordingBus()
    service = RentalService(config, repo, rate_provider, gate, clock, event_bus=bus)
    rental = _start(service, at=ist(2026, 3, 10, 10, 0))
    clock.freeze(ist(2026, 3, 10, 10, 5))
    service.change_vehicle(rental.rental_id, "V2")
    service.complete_rental(rental.rental_id, CompletionDetails(PaymentMethod.CASH))

    assert [event.event_type for event in bus.events] == [
        EventType.RENTAL_STARTED,
        EventType.VEHICLE_CHANGED,
        EventType.RENTAL_COMPLETED,
    ]
    assert bus.events[1].payload["previousVehicleRef"] == "V1"
