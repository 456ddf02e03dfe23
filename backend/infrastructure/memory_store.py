"""In-memory data store used by tests and the ``memory`` storage backend."""
from __future__ import annotations

import copy
import threading
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from domain.errors import ConflictError, NotFoundError
from domain.ledger import DailyLedger, LedgerStatus
from domain.rental import Rental, RentalStatus, Vehicle, VehicleStatus
from .repository import RentalRepository


class InMemoryRentalRepository(RentalRepository):
    """Stores copies so callers never share mutable state with the store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._vehicles: Dict[str, Vehicle] = {}
        self._rentals: Dict[str, Rental] = {}
        self._ledgers: Dict[str, DailyLedger] = {}
        self._date_unique = True

    # Vehicles ------------------------------------------------------------
    def get_vehicle(self, vehicle_ref: str) -> Optional[Vehicle]:
        with self._lock:
            vehicle = self._vehicles.get(vehicle_ref)
            return copy.deepcopy(vehicle) if vehicle else None

    def list_vehicles(self) -> List[Vehicle]:
        with self._lock:
            return [copy.deepcopy(v) for v in sorted(self._vehicles.values(), key=lambda v: v.vehicle_ref)]

    def save_vehicle(self, vehicle: Vehicle) -> None:
        with self._lock:
            self._vehicles[vehicle.vehicle_ref] = copy.deepcopy(vehicle)

    def set_vehicle_status(self, vehicle_ref: str, status: VehicleStatus) -> None:
        with self._lock:
            vehicle = self._vehicles.get(vehicle_ref)
            if vehicle is None:
                raise NotFoundError("vehicle_not_found", f"Vehicle {vehicle_ref} not found")
            vehicle.status = status

    def _claim_vehicle(self, vehicle_ref: str) -> Vehicle:
        vehicle = self._vehicles.get(vehicle_ref)
        if vehicle is None:
            raise NotFoundError("vehicle_not_found", f"Vehicle {vehicle_ref} not found")
        if vehicle.status != VehicleStatus.AVAILABLE:
            raise ConflictError(
                "vehicle_unavailable",
                f"Vehicle {vehicle_ref} is not available",
                {"vehicleRef": vehicle_ref, "status": vehicle.status.value},
            )
        return vehicle

    # Rentals -------------------------------------------------------------
    def get_rental(self, rental_id: str) -> Optional[Rental]:
        with self._lock:
            rental = self._rentals.get(rental_id)
            return copy.deepcopy(rental) if rental else None

    def list_rentals(
        self,
        status: Optional[RentalStatus] = None,
        started_from: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ) -> List[Rental]:
        with self._lock:
            found = []
            for rental in self._rentals.values():
                if status is not None and rental.status != status:
                    continue
                if started_from is not None and rental.start_time < started_from:
                    continue
                if started_before is not None and rental.start_time >= started_before:
                    continue
                found.append(copy.deepcopy(rental))
        found.sort(key=lambda r: (r.start_time, r.rental_id))
        return found

    def list_rental_ids(self, id_prefix: str) -> List[str]:
        with self._lock:
            return [rental_id for rental_id in self._rentals if rental_id.startswith(id_prefix)]

    def customers_seen_before(self, customer_refs: Iterable[str], before: datetime) -> Set[str]:
        wanted = set(customer_refs)
        with self._lock:
            return {
                r.customer_ref
                for r in self._rentals.values()
                if r.customer_ref in wanted and r.start_time < before
            }

    def create_rental(self, rental: Rental) -> None:
        with self._lock:
            if rental.rental_id in self._rentals:
                raise ConflictError("rental_id_collision", f"Rental id {rental.rental_id} already exists")
            vehicle = self._claim_vehicle(rental.vehicle_ref)
            vehicle.status = VehicleStatus.RENTED
            self._rentals[rental.rental_id] = copy.deepcopy(rental)

    def update_rental_if_status(self, rental: Rental, expected: RentalStatus) -> bool:
        with self._lock:
            current = self._rentals.get(rental.rental_id)
            if current is None or current.status != expected:
                return False
            self._rentals[rental.rental_id] = copy.deepcopy(rental)
            return True

    def swap_rental_vehicle(self, rental: Rental, previous_ref: str) -> None:
        with self._lock:
            current = self._rentals.get(rental.rental_id)
            if current is None or current.status != RentalStatus.ACTIVE:
                raise ConflictError("rental_not_active", f"Rental {rental.rental_id} is no longer active")
            new_vehicle = self._claim_vehicle(rental.vehicle_ref)
            new_vehicle.status = VehicleStatus.RENTED
            old_vehicle = self._vehicles.get(previous_ref)
            if old_vehicle is not None:
                old_vehicle.status = VehicleStatus.AVAILABLE
            self._rentals[rental.rental_id] = copy.deepcopy(rental)

    def save_rental(self, rental: Rental) -> None:
        with self._lock:
            self._rentals[rental.rental_id] = copy.deepcopy(rental)

    # Ledgers -------------------------------------------------------------
    def _find_ledger(self, day: date) -> Optional[DailyLedger]:
        matches = [l for l in self._ledgers.values() if l.date == day]
        if not matches:
            return None
        return min(matches, key=lambda l: (l.created_at.timestamp() if l.created_at else 0.0, l.ledger_id))

    def get_or_create_ledger(self, day: date, factory: Callable[[], DailyLedger]) -> DailyLedger:
        with self._lock:
            existing = self._find_ledger(day)
            if existing is None:
                existing = factory()
                self._ledgers[existing.ledger_id] = copy.deepcopy(existing)
            return copy.deepcopy(existing)

    def get_ledger(self, day: date) -> Optional[DailyLedger]:
        with self._lock:
            ledger = self._find_ledger(day)
            return copy.deepcopy(ledger) if ledger else None

    def update_ledger_if_status(self, ledger: DailyLedger, expected: LedgerStatus) -> bool:
        with self._lock:
            current = self._ledgers.get(ledger.ledger_id)
            if current is None or current.status != expected:
                return False
            self._ledgers[ledger.ledger_id] = copy.deepcopy(ledger)
            return True

    def save_ledger(self, ledger: DailyLedger) -> None:
        with self._lock:
            self._ledgers[ledger.ledger_id] = copy.deepcopy(ledger)

    def list_ledgers(self, date_from: Optional[date] = None, date_to: Optional[date] = None) -> List[DailyLedger]:
        with self._lock:
            days = {l.date for l in self._ledgers.values()}
            found = []
            for day in days:
                if date_from is not None and day < date_from:
                    continue
                if date_to is not None and day > date_to:
                    continue
                found.append(copy.deepcopy(self._find_ledger(day)))
        found.sort(key=lambda l: l.date, reverse=True)
        return found

    # Migration / repair --------------------------------------------------
    def list_all_ledgers(self) -> List[DailyLedger]:
        with self._lock:
            return [copy.deepcopy(l) for l in self._ledgers.values()]

    def import_ledger(self, ledger: DailyLedger) -> None:
        with self._lock:
            if self._date_unique and self._find_ledger(ledger.date) is not None:
                raise ConflictError("duplicate_ledger_date", f"A ledger for {ledger.date} already exists")
            self._ledgers[ledger.ledger_id] = copy.deepcopy(ledger)

    def delete_ledger(self, ledger_id: str) -> None:
        with self._lock:
            self._ledgers.pop(ledger_id, None)

    def ensure_ledger_date_unique(self) -> bool:
        with self._lock:
            dates = [l.date for l in self._ledgers.values()]
            self._date_unique = len(dates) == len(set(dates))
            return self._date_unique

    def drop_ledger_date_unique(self) -> None:
        """Simulate a legacy store without the constraint (migration tests)."""
        with self._lock:
            self._date_unique = False
