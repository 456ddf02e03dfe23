"""Abstract repository interface for persistence."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Callable, Iterable, List, Optional, Set

from domain.ledger import DailyLedger, LedgerStatus
from domain.rental import Rental, RentalStatus, Vehicle, VehicleStatus


class RentalRepository(ABC):
    """Unified gateway so the memory store and SQLite share the same API.

    Every multi-record change the services need to be atomic is a single
    method here; implementations own the transaction boundary.
    """

    # Vehicles ------------------------------------------------------------
    @abstractmethod
    def get_vehicle(self, vehicle_ref: str) -> Optional[Vehicle]:
        raise NotImplementedError

    @abstractmethod
    def list_vehicles(self) -> List[Vehicle]:
        raise NotImplementedError

    @abstractmethod
    def save_vehicle(self, vehicle: Vehicle) -> None:
        raise NotImplementedError

    @abstractmethod
    def set_vehicle_status(self, vehicle_ref: str, status: VehicleStatus) -> None:
        """Unconditional flag write (the secondary write of complete/cancel)."""
        raise NotImplementedError

    # Rentals -------------------------------------------------------------
    @abstractmethod
    def get_rental(self, rental_id: str) -> Optional[Rental]:
        raise NotImplementedError

    @abstractmethod
    def list_rentals(
        self,
        status: Optional[RentalStatus] = None,
        started_from: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ) -> List[Rental]:
        """Rentals ordered by start time; bounds are ``[started_from, started_before)``."""
        raise NotImplementedError

    @abstractmethod
    def list_rental_ids(self, id_prefix: str) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    def customers_seen_before(self, customer_refs: Iterable[str], before: datetime) -> Set[str]:
        """Subset of ``customer_refs`` that have any rental starting before ``before``."""
        raise NotImplementedError

    @abstractmethod
    def create_rental(self, rental: Rental) -> None:
        """Claim the vehicle (available -> rented) and insert the rental in one step.

        Raises ``NotFoundError`` (unknown vehicle), ``ConflictError`` with reason
        ``vehicle_unavailable`` or ``rental_id_collision``. Nothing is written on failure.
        """
        raise NotImplementedError

    @abstractmethod
    def update_rental_if_status(self, rental: Rental, expected: RentalStatus) -> bool:
        """Persist ``rental`` only if the stored status still equals ``expected``."""
        raise NotImplementedError

    @abstractmethod
    def swap_rental_vehicle(self, rental: Rental, previous_ref: str) -> None:
        """Claim ``rental.vehicle_ref``, release ``previous_ref`` and save the rental atomically.

        Raises ``ConflictError`` (``vehicle_unavailable`` / ``rental_not_active``)
        or ``NotFoundError``; nothing is written on failure.
        """
        raise NotImplementedError

    @abstractmethod
    def save_rental(self, rental: Rental) -> None:
        raise NotImplementedError

    # Ledgers -------------------------------------------------------------
    @abstractmethod
    def get_or_create_ledger(self, day: date, factory: Callable[[], DailyLedger]) -> DailyLedger:
        """Atomic insert-if-absent keyed on ``day``; concurrent callers get the same record."""
        raise NotImplementedError

    @abstractmethod
    def get_ledger(self, day: date) -> Optional[DailyLedger]:
        raise NotImplementedError

    @abstractmethod
    def update_ledger_if_status(self, ledger: DailyLedger, expected: LedgerStatus) -> bool:
        raise NotImplementedError

    @abstractmethod
    def save_ledger(self, ledger: DailyLedger) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_ledgers(self, date_from: Optional[date] = None, date_to: Optional[date] = None) -> List[DailyLedger]:
        """Ledgers within the inclusive range, newest first."""
        raise NotImplementedError

    # Migration / repair --------------------------------------------------
    @abstractmethod
    def list_all_ledgers(self) -> List[DailyLedger]:
        """Every stored ledger record, duplicates included."""
        raise NotImplementedError

    @abstractmethod
    def import_ledger(self, ledger: DailyLedger) -> None:
        """Raw insert used by data migration; bypasses get-or-create."""
        raise NotImplementedError

    @abstractmethod
    def delete_ledger(self, ledger_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def ensure_ledger_date_unique(self) -> bool:
        """(Re-)establish the one-ledger-per-date constraint; False if duplicates still block it."""
        raise NotImplementedError
