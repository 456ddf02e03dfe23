"""Reconciliation jobs: summary recompute, historical reprice, ledger dedup, vehicle flags."""
from datetime import date
from decimal import Decimal

import pytest

from conftest import FakeBlacklistGate, ist
from application.ledger_service import LedgerService
from application.reconciliation_service import ReconciliationService
from application.rental_service import CompletionDetails, RentalService, StartDetails
from domain.errors import ConflictError, ValidationError
from domain.ledger import DailyLedger, LedgerStatus, LedgerSummary
from domain.rate_schedule import RateSchedule
from domain.rental import PaymentMethod, Rental, RentalStatus, Vehicle, VehicleStatus
from infrastructure.memory_store import InMemoryRentalRepository

DAY = date(2026, 3, 10)
HOURLY_100 = RateSchedule.from_mapping({"hourly_rate": 100})


def _completed_pair(rental_service, clock):
    """r1 10:00-11:30 (120.00) and r2 14:00-15:00 (80.00)."""
    r1 = rental_service.start_rental("V1", "C1", StartDetails(start_time=ist(2026, 3, 10, 10, 0))).rental
    r2 = rental_service.start_rental("V2", "C2", StartDetails(start_time=ist(2026, 3, 10, 14, 0))).rental
    clock.freeze(ist(2026, 3, 10, 11, 30))
    rental_service.complete_rental(r1.rental_id, CompletionDetails(PaymentMethod.CASH))
    clock.freeze(ist(2026, 3, 10, 15, 0))
    rental_service.complete_rental(r2.rental_id, CompletionDetails(PaymentMethod.UPI))
    return r1.rental_id, r2.rental_id


def _ledger(ledger_id, status, created_hour, revenue="0", bookings=0):
    return DailyLedger(
        ledger_id=ledger_id,
        date=DAY,
        status=status,
        day_started=status != LedgerStatus.NOT_STARTED,
        summary=LedgerSummary(total_revenue=Decimal(revenue).quantize(Decimal("0.01")), total_bookings=bookings),
        created_at=ist(2026, 3, 10, created_hour, 0),
    )


# Summary recompute -------------------------------------------------------
def test_recompute_empty_day_is_zero_and_idempotent(reconciliation_service):
    first = reconciliation_service.recompute_summary(DAY)
    second = reconciliation_service.recompute_summary(DAY)

    assert first.summary == LedgerSummary()
    assert second.summary == first.summary
    assert first.ledger_id == second.ledger_id


def test_cancelled_rental_with_stale_amount_earns_nothing(reconciliation_service, repo):
    repo.save_rental(
        Rental(
            rental_id="MRT-20260310-001",
            vehicle_ref="V1",
            customer_ref="C1",
            start_time=ist(2026, 3, 10, 10, 0),
            status=RentalStatus.CANCELLED,
            final_amount=Decimal("999.00"),
        )
    )

    summary = reconciliation_service.recompute_summary(DAY).summary

    assert summary.total_revenue == Decimal("0.00")
    assert summary.cancelled_bookings == 1
    assert summary.vehicles_used == 0


def test_recompute_repairs_a_drifted_ledger(reconciliation_service, ledger_service, rental_service, repo, clock):
    clock.freeze(ist(2026, 3, 10, 9, 0))
    ledger_service.start_day(DAY, "Asha")
    _completed_pair(rental_service, clock)
    clock.freeze(ist(2026, 3, 10, 18, 0))
    ended = ledger_service.end_day(DAY, "Asha")
    drifted = repo.get_ledger(DAY)
    drifted.summary = LedgerSummary(total_revenue=Decimal("5.00"))
    repo.save_ledger(drifted)

    repaired = reconciliation_service.recompute_summary(DAY)

    assert repaired.summary == ended.summary
    assert repaired.summary.total_revenue == Decimal("200.00")
    assert repaired.status == LedgerStatus.ENDED


# Reprice -----------------------------------------------------------------
def test_dry_run_reports_without_writing(reconciliation_service, rental_service, repo, clock):
    r1, r2 = _completed_pair(rental_service, clock)

    report = reconciliation_service.reprice_historical(DAY, DAY, schedule=HOURLY_100, dry_run=True)
    data = report.to_dict()

    assert data["processed"] == 2
    assert data["changed"] == 2
    assert data["totalOld"] == "200.00"
    assert data["totalNew"] == "250.00"
    assert data["difference"] == "50.00"
    assert data["percentageChange"] == "25.00"
    assert data["biggestIncrease"]["rentalId"] == r1
    assert data["biggestDecrease"] is None
    assert {r["rentalId"]: r["newAmount"] for r in data["records"]} == {r1: "150.00", r2: "100.00"}
    assert repo.get_rental(r1).final_amount == Decimal("120.00")


def test_live_reprice_is_idempotent(reconciliation_service, ledger_service, rental_service, repo, clock):
    clock.freeze(ist(2026, 3, 10, 9, 0))
    ledger_service.start_day(DAY, "Asha")
    r1, _ = _completed_pair(rental_service, clock)
    clock.freeze(ist(2026, 3, 10, 18, 0))
    ledger_service.end_day(DAY, "Asha")

    report = reconciliation_service.reprice_historical(DAY, DAY, schedule=HOURLY_100, dry_run=False)

    assert len(report.changed) == 2
    assert report.ledgers_recomputed == ["2026-03-10"]
    stored = repo.get_rental(r1)
    assert stored.final_amount == Decimal("150.00")
    assert stored.base_amount == Decimal("150.00")
    assert stored.repriced_at == ist(2026, 3, 10, 18, 0)
    assert repo.get_ledger(DAY).summary.total_revenue == Decimal("250.00")

    again = reconciliation_service.reprice_historical(DAY, DAY, schedule=HOURLY_100, dry_run=False)

    assert len(again.records) == 2
    assert again.changed == []
    assert again.ledgers_recomputed == []


def test_reprice_skips_active_and_cancelled_rentals(reconciliation_service, rental_service, clock):
    _completed_pair(rental_service, clock)
    rental_service.start_rental("V3", "C3", StartDetails(start_time=ist(2026, 3, 10, 15, 0)))

    report = reconciliation_service.reprice_historical(DAY, DAY, schedule=HOURLY_100)

    assert len(report.records) == 2


def test_reprice_collects_per_record_errors(config, rate_provider, clock):
    class BrokenWriteRepository(InMemoryRentalRepository):
        broken = set()

        def update_rental_if_status(self, rental, expected):
            if rental.rental_id in self.broken:
                raise RuntimeError("disk full")
            return super().update_rental_if_status(rental, expected)

    repo = BrokenWriteRepository()
    for ref in ("V1", "V2"):
        repo.save_vehicle(Vehicle(vehicle_ref=ref))
    rentals = RentalService(config, repo, rate_provider, FakeBlacklistGate(), clock)
    r1, r2 = _completed_pair(rentals, clock)
    repo.broken = {r1}
    service = ReconciliationService(repo, LedgerService(config, repo, clock), rate_provider, clock)

    report = service.reprice_historical(DAY, DAY, schedule=HOURLY_100, dry_run=False)

    assert [e.record_id for e in report.errors] == [r1]
    assert "disk full" in report.errors[0].error
    assert [r.rental_id for r in report.records] == [r2]
    assert repo.get_rental(r2).final_amount == Decimal("100.00")
    assert repo.get_rental(r1).final_amount == Decimal("120.00")


def test_reprice_rejects_inverted_range(reconciliation_service):
    with pytest.raises(ValidationError) as exc:
        reconciliation_service.reprice_historical(date(2026, 3, 11), DAY)
    assert exc.value.reason == "invalid_range"


# Ledger dedup ------------------------------------------------------------
def test_deduplicate_keeps_highest_status(reconciliation_service, repo):
    repo.drop_ledger_date_unique()
    repo.import_ledger(_ledger("LDG-A", LedgerStatus.NOT_STARTED, 8))
    repo.import_ledger(_ledger("LDG-B", LedgerStatus.ENDED, 9, revenue="100", bookings=2))
    repo.import_ledger(_ledger("LDG-C", LedgerStatus.IN_PROGRESS, 10))
    repo.import_ledger(
        DailyLedger(ledger_id="LDG-OTHER", date=date(2026, 3, 11), created_at=ist(2026, 3, 11, 8, 0))
    )

    report = reconciliation_service.deduplicate_ledgers()

    assert report["duplicateDates"] == 1
    assert report["removed"] == 2
    assert report["kept"] == [{"date": "2026-03-10", "ledgerId": "LDG-B", "status": "ended"}]
    assert {r["ledgerId"] for r in report["removedRecords"]} == {"LDG-A", "LDG-C"}
    assert report["uniqueConstraint"] is True
    assert repo.get_ledger(DAY).ledger_id == "LDG-B"
    assert len(repo.list_all_ledgers()) == 2

    with pytest.raises(ConflictError) as exc:
        repo.import_ledger(_ledger("LDG-D", LedgerStatus.NOT_STARTED, 11))
    assert exc.value.reason == "duplicate_ledger_date"

    assert reconciliation_service.deduplicate_ledgers()["removed"] == 0


def test_deduplicate_tie_breaks_on_data_then_recency(reconciliation_service, repo):
    repo.drop_ledger_date_unique()
    repo.import_ledger(_ledger("LDG-RICH", LedgerStatus.ENDED, 8, revenue="300", bookings=4))
    repo.import_ledger(_ledger("LDG-POOR", LedgerStatus.ENDED, 9, revenue="80", bookings=1))

    assert reconciliation_service.deduplicate_ledgers()["kept"][0]["ledgerId"] == "LDG-RICH"

    next_day = date(2026, 3, 12)
    repo.drop_ledger_date_unique()
    for ledger_id, hour in (("LDG-OLD", 7), ("LDG-NEW", 9)):
        ledger = _ledger(ledger_id, LedgerStatus.IN_PROGRESS, hour)
        ledger.date = next_day
        repo.import_ledger(ledger)

    assert reconciliation_service.deduplicate_ledgers()["kept"][0]["ledgerId"] == "LDG-NEW"


# Vehicle flags -----------------------------------------------------------
def test_repair_vehicle_flags(reconciliation_service, rental_service, repo):
    rental_service.start_rental("V1", "C1")
    repo.set_vehicle_status("V1", VehicleStatus.AVAILABLE)
    repo.set_vehicle_status("V2", VehicleStatus.RENTED)
    repo.set_vehicle_status("V3", VehicleStatus.MAINTENANCE)

    report = reconciliation_service.repair_vehicle_flags()

    assert report["checked"] == 4
    assert sorted(report["corrections"], key=lambda c: c["vehicleRef"]) == [
        {"vehicleRef": "V1", "from": "available", "to": "rented"},
        {"vehicleRef": "V2", "from": "rented", "to": "available"},
    ]
    assert repo.get_vehicle("V3").status == VehicleStatus.MAINTENANCE
    assert reconciliation_service.repair_vehicle_flags()["corrected"] == 0
