"""Idempotent repair jobs: summary recompute, historical repricing, ledger dedup, vehicle flags.

Every batch job processes records independently. A failing record is reported
as a ``ReconciliationError`` and the job moves on; re-running a job is safe.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Set

from application.clock import BusinessClock
from application.events import AsyncEventBus, EventType, OperationEvent
from application.ledger_service import LedgerService
from application.rate_provider import ConfigRateScheduleProvider
from domain.errors import ConflictError, ReconciliationError, ValidationError
from domain.ledger import STATUS_PRIORITY, DailyLedger, LedgerStatus
from domain.pricing import ZERO, apply_adjustments, price
from domain.rate_schedule import RateSchedule
from domain.rental import RentalStatus, VehicleStatus
from infrastructure.repository import RentalRepository

logger = logging.getLogger(__name__)

SUMMARY_ATTEMPTS = 3


@dataclass
class RepriceRecord:
    rental_id: str
    old_amount: Decimal
    new_amount: Decimal
    total_minutes: int
    changed: bool

    @property
    def difference(self) -> Decimal:
        return self.new_amount - self.old_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rentalId": self.rental_id,
            "oldAmount": str(self.old_amount),
            "newAmount": str(self.new_amount),
            "difference": str(self.difference),
            "totalMinutes": self.total_minutes,
            "changed": self.changed,
        }


@dataclass
class RepriceReport:
    dry_run: bool
    schedule: RateSchedule
    date_from: date
    date_to: date
    records: List[RepriceRecord] = field(default_factory=list)
    errors: List[ReconciliationError] = field(default_factory=list)
    ledgers_recomputed: List[str] = field(default_factory=list)

    @property
    def total_old(self) -> Decimal:
        return sum((r.old_amount for r in self.records), ZERO)

    @property
    def total_new(self) -> Decimal:
        return sum((r.new_amount for r in self.records), ZERO)

    @property
    def changed(self) -> List[RepriceRecord]:
        return [r for r in self.records if r.changed]

    def to_dict(self) -> Dict[str, Any]:
        difference = self.total_new - self.total_old
        percentage = ZERO
        if self.total_old > 0:
            percentage = (difference * 100 / self.total_old).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        increases = [r for r in self.records if r.difference > 0]
        decreases = [r for r in self.records if r.difference < 0]
        return {
            "dryRun": self.dry_run,
            "schedule": self.schedule.to_dict(),
            "dateFrom": self.date_from.isoformat(),
            "dateTo": self.date_to.isoformat(),
            "processed": len(self.records),
            "changed": len(self.changed),
            "unchanged": len(self.records) - len(self.changed),
            "totalOld": str(self.total_old),
            "totalNew": str(self.total_new),
            "difference": str(difference),
            "percentageChange": str(percentage),
            "biggestIncrease": max(increases, key=lambda r: r.difference).to_dict() if increases else None,
            "biggestDecrease": min(decreases, key=lambda r: r.difference).to_dict() if decreases else None,
            "records": [r.to_dict() for r in self.records],
            "errors": [e.to_dict() for e in self.errors],
            "ledgersRecomputed": self.ledgers_recomputed,
        }


class ReconciliationService:
    def __init__(
        self,
        repository: RentalRepository,
        ledger_service: LedgerService,
        rate_provider: ConfigRateScheduleProvider,
        clock: BusinessClock,
        event_bus: Optional[AsyncEventBus] = None,
    ):
        self.repo = repository
        self.ledger_service = ledger_service
        self.rate_provider = rate_provider
        self.clock = clock
        self.event_bus = event_bus

    # Summary -------------------------------------------------------------
    def recompute_summary(self, day: date) -> DailyLedger:
        """Rebuild the stored summary from rentals; never fails for an empty day."""
        for _ in range(SUMMARY_ATTEMPTS):
            ledger = self.ledger_service.get_or_create(day)
            summary = self.ledger_service.compute_summary(ledger)
            ledger.summary = self.ledger_service.with_live_hours(ledger, summary)
            ledger.updated_at = self.clock.now()
            if self.repo.update_ledger_if_status(ledger, ledger.status):
                return ledger
        raise ConflictError("ledger_state_changed", f"Ledger for {day} kept changing, retry the recompute")

    # Reprice -------------------------------------------------------------
    def reprice_historical(
        self,
        date_from: date,
        date_to: date,
        schedule: Optional[RateSchedule] = None,
        dry_run: bool = True,
    ) -> RepriceReport:
        if date_from > date_to:
            raise ValidationError("invalid_range", "'from' must not be after 'to'")
        schedule = schedule or self.rate_provider.get_rate_schedule()
        window_start, _ = self.clock.day_window(date_from)
        _, window_end = self.clock.day_window(date_to)
        report = RepriceReport(dry_run=dry_run, schedule=schedule, date_from=date_from, date_to=date_to)
        touched_days: Set[date] = set()
        now = self.clock.now()

        rentals = self.repo.list_rentals(
            status=RentalStatus.COMPLETED, started_from=window_start, started_before=window_end
        )
        for rental in rentals:
            if rental.end_time is None:
                continue
            try:
                pricing = price(rental.start_time, rental.end_time, schedule, self.clock.tz)
                new_amount = apply_adjustments(pricing.amount, rental.discount_amount, rental.additional_charges)
                old_amount = rental.final_amount if rental.final_amount is not None else ZERO
                changed = (
                    new_amount != old_amount
                    or rental.base_amount != pricing.amount
                    or list(rental.pricing_breakdown) != list(pricing.breakdown)
                )
                if changed and not dry_run:
                    rental.apply_reprice(pricing, new_amount, now)
                    if not self.repo.update_rental_if_status(rental, RentalStatus.COMPLETED):
                        raise ConflictError("rental_not_completed", "Rental status changed during repricing")
                    touched_days.add(self.clock.localize(rental.start_time).date())
                report.records.append(
                    RepriceRecord(rental.rental_id, old_amount, new_amount, pricing.total_minutes, changed)
                )
            except Exception as exc:  # collected per record, the batch continues
                logger.error("Reprice failed for %s: %s", rental.rental_id, exc)
                report.errors.append(ReconciliationError(rental.rental_id, str(exc), {"stage": "reprice"}))

        if not dry_run:
            for day in sorted(touched_days):
                ledger = self.repo.get_ledger(day)
                if ledger is None or ledger.status != LedgerStatus.ENDED:
                    continue
                try:
                    self.recompute_summary(day)
                    report.ledgers_recomputed.append(day.isoformat())
                except ConflictError as exc:
                    report.errors.append(ReconciliationError(str(day), exc.message, {"stage": "ledger"}))

        logger.info(
            "Reprice %s..%s (%s): %d processed, %d changed, %s -> %s",
            date_from, date_to, "dry run" if dry_run else "applied",
            len(report.records), len(report.changed), report.total_old, report.total_new,
        )
        self._publish("reprice", report.to_dict())
        return report

    # Ledger dedup --------------------------------------------------------
    def deduplicate_ledgers(self) -> Dict[str, Any]:
        """Keep one ledger per date (ended > in_progress > not_started, then more data, then newest)."""
        by_date: Dict[date, List[DailyLedger]] = defaultdict(list)
        for ledger in self.repo.list_all_ledgers():
            by_date[ledger.date].append(ledger)

        kept: List[Dict[str, Any]] = []
        removed: List[Dict[str, Any]] = []
        errors: List[ReconciliationError] = []
        for day, ledgers in sorted(by_date.items()):
            if len(ledgers) < 2:
                continue
            ranked = sorted(ledgers, key=self._survivor_rank, reverse=True)
            survivor = ranked[0]
            kept.append({"date": day.isoformat(), "ledgerId": survivor.ledger_id, "status": survivor.status.value})
            for duplicate in ranked[1:]:
                try:
                    self.repo.delete_ledger(duplicate.ledger_id)
                    removed.append(
                        {
                            "date": day.isoformat(),
                            "ledgerId": duplicate.ledger_id,
                            "status": duplicate.status.value,
                            "totalRevenue": str(duplicate.summary.total_revenue),
                        }
                    )
                except Exception as exc:  # collected per record, the batch continues
                    logger.error("Could not delete duplicate ledger %s: %s", duplicate.ledger_id, exc)
                    errors.append(ReconciliationError(duplicate.ledger_id, str(exc), {"date": day.isoformat()}))

        unique = self.repo.ensure_ledger_date_unique()
        if not unique:
            logger.error("Ledger date uniqueness could not be re-established")
        for entry in removed:
            logger.warning("Removed duplicate ledger %s for %s (%s)", entry["ledgerId"], entry["date"], entry["status"])

        report = {
            "duplicateDates": len(kept),
            "removed": len(removed),
            "kept": kept,
            "removedRecords": removed,
            "errors": [e.to_dict() for e in errors],
            "uniqueConstraint": unique,
        }
        self._publish("deduplicate", report)
        return report

    @staticmethod
    def _survivor_rank(ledger: DailyLedger):
        created = ledger.created_at.timestamp() if ledger.created_at else 0.0
        return (STATUS_PRIORITY[ledger.status], ledger.summary.data_weight, created)

    # Vehicle flags -------------------------------------------------------
    def repair_vehicle_flags(self) -> Dict[str, Any]:
        """Re-derive availability from active rentals; maintenance vehicles are left alone."""
        active_refs = {rental.vehicle_ref for rental in self.repo.list_rentals(status=RentalStatus.ACTIVE)}
        corrections: List[Dict[str, Any]] = []
        errors: List[ReconciliationError] = []
        vehicles = self.repo.list_vehicles()
        for vehicle in vehicles:
            if vehicle.status == VehicleStatus.MAINTENANCE:
                continue
            expected = VehicleStatus.RENTED if vehicle.vehicle_ref in active_refs else VehicleStatus.AVAILABLE
            if vehicle.status == expected:
                continue
            try:
                self.repo.set_vehicle_status(vehicle.vehicle_ref, expected)
                corrections.append(
                    {"vehicleRef": vehicle.vehicle_ref, "from": vehicle.status.value, "to": expected.value}
                )
                logger.warning("Vehicle %s flag repaired: %s -> %s", vehicle.vehicle_ref, vehicle.status.value, expected.value)
            except Exception as exc:  # collected per record, the batch continues
                logger.error("Could not repair vehicle %s: %s", vehicle.vehicle_ref, exc)
                errors.append(ReconciliationError(vehicle.vehicle_ref, str(exc)))

        report = {
            "checked": len(vehicles),
            "corrected": len(corrections),
            "corrections": corrections,
            "errors": [e.to_dict() for e in errors],
        }
        self._publish("repair_vehicle_flags", report)
        return report

    def _publish(self, job: str, report: Dict[str, Any]) -> None:
        if self.event_bus:
            self.event_bus.publish_sync(OperationEvent(EventType.RECONCILIATION_FINISHED, job, {"report": report}))
