"""SQLite-backed repository implementation."""
from __future__ import annotations

import json
from datetime import date, datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from domain.errors import ConflictError, NotFoundError
from domain.ledger import DailyLedger, LedgerStatus, LedgerSummary, RestartEntry
from domain.pricing import PricingBlock
from domain.rental import (
    CancellationInfo,
    PaymentMethod,
    Rental,
    RentalStatus,
    Vehicle,
    VehicleChange,
    VehicleCondition,
    VehicleStatus,
)
from .database import (
    LEDGER_DATE_INDEX,
    build_engine,
    ensure_unique_ledger_date,
    init_db,
    ledger_date_index_exists,
    session_for,
)
from .models import DailyLedgerModel, RentalModel, VehicleModel
from .repository import RentalRepository


def _to_db(moment: Optional[datetime]) -> Optional[datetime]:
    """Aware -> naive UTC. Naive values are assumed to be UTC already."""
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


class SQLiteRentalRepository(RentalRepository):
    def __init__(self, db_path: Path, tz: tzinfo = timezone.utc):
        self.db_path = Path(db_path)
        self.tz = tz
        self.engine = build_engine(self.db_path)
        self._date_unique = init_db(self.engine, self.db_path)

    def _session(self) -> Session:
        return session_for(self.engine)

    def _from_db(self, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc).astimezone(self.tz)

    # Vehicles ------------------------------------------------------------
    def get_vehicle(self, vehicle_ref: str) -> Optional[Vehicle]:
        with self._session() as session:
            model = session.get(VehicleModel, vehicle_ref)
            return self._vehicle_from_model(model) if model else None

    def list_vehicles(self) -> List[Vehicle]:
        with self._session() as session:
            models = session.exec(select(VehicleModel).order_by(VehicleModel.vehicle_ref)).all()
            return [self._vehicle_from_model(model) for model in models]

    def save_vehicle(self, vehicle: Vehicle) -> None:
        with self._session() as session, session.begin():
            session.merge(
                VehicleModel(
                    vehicle_ref=vehicle.vehicle_ref,
                    status=vehicle.status.value,
                    model=vehicle.model,
                    plate_number=vehicle.plate_number,
                )
            )

    def set_vehicle_status(self, vehicle_ref: str, status: VehicleStatus) -> None:
        with self._session() as session, session.begin():
            result = session.connection().execute(
                update(VehicleModel)
                .where(col(VehicleModel.vehicle_ref) == vehicle_ref)
                .values(status=status.value)
            )
            if result.rowcount == 0:
                raise NotFoundError("vehicle_not_found", f"Vehicle {vehicle_ref} not found")

    def _claim_vehicle(self, session: Session, vehicle_ref: str) -> None:
        """Conditional available -> rented flip inside the caller's transaction."""
        result = session.connection().execute(
            update(VehicleModel)
            .where(
                col(VehicleModel.vehicle_ref) == vehicle_ref,
                col(VehicleModel.status) == VehicleStatus.AVAILABLE.value,
            )
            .values(status=VehicleStatus.RENTED.value)
        )
        if result.rowcount == 1:
            return
        model = session.get(VehicleModel, vehicle_ref)
        if model is None:
            raise NotFoundError("vehicle_not_found", f"Vehicle {vehicle_ref} not found")
        raise ConflictError(
            "vehicle_unavailable",
            f"Vehicle {vehicle_ref} is not available",
            {"vehicleRef": vehicle_ref, "status": model.status},
        )

    # Rentals -------------------------------------------------------------
    def get_rental(self, rental_id: str) -> Optional[Rental]:
        with self._session() as session:
            model = session.get(RentalModel, rental_id)
            return self._rental_from_model(model) if model else None

    def list_rentals(
        self,
        status: Optional[RentalStatus] = None,
        started_from: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ) -> List[Rental]:
        statement = select(RentalModel)
        if status is not None:
            statement = statement.where(col(RentalModel.status) == status.value)
        if started_from is not None:
            statement = statement.where(col(RentalModel.start_time) >= _to_db(started_from))
        if started_before is not None:
            statement = statement.where(col(RentalModel.start_time) < _to_db(started_before))
        statement = statement.order_by(col(RentalModel.start_time), col(RentalModel.rental_id))
        with self._session() as session:
            return [self._rental_from_model(model) for model in session.exec(statement).all()]

    def list_rental_ids(self, id_prefix: str) -> List[str]:
        with self._session() as session:
            return list(
                session.exec(
                    select(RentalModel.rental_id).where(col(RentalModel.rental_id).startswith(id_prefix))
                ).all()
            )

    def customers_seen_before(self, customer_refs: Iterable[str], before: datetime) -> Set[str]:
        refs = list(set(customer_refs))
        if not refs:
            return set()
        with self._session() as session:
            rows = session.exec(
                select(RentalModel.customer_ref)
                .where(col(RentalModel.customer_ref).in_(refs))
                .where(col(RentalModel.start_time) < _to_db(before))
                .distinct()
            ).all()
        return set(rows)

    def create_rental(self, rental: Rental) -> None:
        try:
            with self._session() as session, session.begin():
                # claim first: the write lock is taken before anything is read
                self._claim_vehicle(session, rental.vehicle_ref)
                session.add(RentalModel(**self._rental_values(rental)))
        except IntegrityError as exc:
            raise ConflictError("rental_id_collision", f"Rental id {rental.rental_id} already exists") from exc

    def update_rental_if_status(self, rental: Rental, expected: RentalStatus) -> bool:
        values = self._rental_values(rental)
        values.pop("rental_id")
        with self._session() as session, session.begin():
            result = session.connection().execute(
                update(RentalModel)
                .where(
                    col(RentalModel.rental_id) == rental.rental_id,
                    col(RentalModel.status) == expected.value,
                )
                .values(**values)
            )
            return result.rowcount == 1

    def swap_rental_vehicle(self, rental: Rental, previous_ref: str) -> None:
        values = self._rental_values(rental)
        values.pop("rental_id")
        with self._session() as session, session.begin():
            self._claim_vehicle(session, rental.vehicle_ref)
            result = session.connection().execute(
                update(RentalModel)
                .where(
                    col(RentalModel.rental_id) == rental.rental_id,
                    col(RentalModel.status) == RentalStatus.ACTIVE.value,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                raise ConflictError("rental_not_active", f"Rental {rental.rental_id} is no longer active")
            session.connection().execute(
                update(VehicleModel)
                .where(col(VehicleModel.vehicle_ref) == previous_ref)
                .values(status=VehicleStatus.AVAILABLE.value)
            )

    def save_rental(self, rental: Rental) -> None:
        with self._session() as session, session.begin():
            session.merge(RentalModel(**self._rental_values(rental)))

    # Ledgers -------------------------------------------------------------
    def get_or_create_ledger(self, day: date, factory: Callable[[], DailyLedger]) -> DailyLedger:
        if not self._date_unique:
            existing = self.get_ledger(day)
            if existing is not None:
                return existing
        values = self._ledger_values(factory())
        statement = sqlite_insert(DailyLedgerModel.__table__).values(**values)
        if self._date_unique:
            statement = statement.on_conflict_do_nothing(index_elements=["business_date"])
        with self.engine.begin() as conn:
            conn.execute(statement)
        return self.get_ledger(day)

    def get_ledger(self, day: date) -> Optional[DailyLedger]:
        with self._session() as session:
            model = session.exec(
                select(DailyLedgerModel)
                .where(col(DailyLedgerModel.business_date) == day)
                .order_by(col(DailyLedgerModel.created_at), col(DailyLedgerModel.ledger_id))
                .limit(1)
            ).first()
            return self._ledger_from_model(model) if model else None

    def update_ledger_if_status(self, ledger: DailyLedger, expected: LedgerStatus) -> bool:
        values = self._ledger_values(ledger)
        values.pop("ledger_id")
        with self._session() as session, session.begin():
            result = session.connection().execute(
                update(DailyLedgerModel)
                .where(
                    col(DailyLedgerModel.ledger_id) == ledger.ledger_id,
                    col(DailyLedgerModel.status) == expected.value,
                )
                .values(**values)
            )
            return result.rowcount == 1

    def save_ledger(self, ledger: DailyLedger) -> None:
        with self._session() as session, session.begin():
            session.merge(DailyLedgerModel(**self._ledger_values(ledger)))

    def list_ledgers(self, date_from: Optional[date] = None, date_to: Optional[date] = None) -> List[DailyLedger]:
        statement = select(DailyLedgerModel)
        if date_from is not None:
            statement = statement.where(col(DailyLedgerModel.business_date) >= date_from)
        if date_to is not None:
            statement = statement.where(col(DailyLedgerModel.business_date) <= date_to)
        statement = statement.order_by(
            col(DailyLedgerModel.business_date).desc(),
            col(DailyLedgerModel.created_at),
            col(DailyLedgerModel.ledger_id),
        )
        ledgers: List[DailyLedger] = []
        seen: Set[date] = set()
        with self._session() as session:
            for model in session.exec(statement).all():
                # legacy duplicates: report the oldest record per date
                if model.business_date in seen:
                    continue
                seen.add(model.business_date)
                ledgers.append(self._ledger_from_model(model))
        return ledgers

    # Migration / repair --------------------------------------------------
    def list_all_ledgers(self) -> List[DailyLedger]:
        with self._session() as session:
            models = session.exec(select(DailyLedgerModel).order_by(col(DailyLedgerModel.business_date))).all()
            return [self._ledger_from_model(model) for model in models]

    def import_ledger(self, ledger: DailyLedger) -> None:
        try:
            with self._session() as session, session.begin():
                session.add(DailyLedgerModel(**self._ledger_values(ledger)))
        except IntegrityError as exc:
            raise ConflictError("duplicate_ledger_date", f"A ledger for {ledger.date} already exists") from exc

    def delete_ledger(self, ledger_id: str) -> None:
        with self._session() as session, session.begin():
            session.connection().execute(
                delete(DailyLedgerModel).where(col(DailyLedgerModel.ledger_id) == ledger_id)
            )

    def ensure_ledger_date_unique(self) -> bool:
        self._date_unique = ensure_unique_ledger_date(self.engine) and ledger_date_index_exists(self.engine)
        return self._date_unique

    def drop_ledger_date_unique(self) -> None:
        """Simulate a legacy database without the constraint (migration tests)."""
        with self.engine.begin() as conn:
            conn.exec_driver_sql(f"DROP INDEX IF EXISTS {LEDGER_DATE_INDEX}")
        self._date_unique = False

    # Mapping helpers -----------------------------------------------------
    def _vehicle_from_model(self, model: VehicleModel) -> Vehicle:
        return Vehicle(
            vehicle_ref=model.vehicle_ref,
            status=VehicleStatus(model.status),
            model=model.model,
            plate_number=model.plate_number,
        )

    def _rental_values(self, rental: Rental) -> Dict[str, Any]:
        return {
            "rental_id": rental.rental_id,
            "vehicle_ref": rental.vehicle_ref,
            "customer_ref": rental.customer_ref,
            "start_time": _to_db(rental.start_time),
            "end_time": _to_db(rental.end_time),
            "status": rental.status.value,
            "base_amount": rental.base_amount,
            "final_amount": rental.final_amount,
            "discount_amount": rental.discount_amount,
            "additional_charges": rental.additional_charges,
            "total_minutes": rental.total_minutes,
            "pricing_breakdown_json": json.dumps([block.to_dict() for block in rental.pricing_breakdown]),
            "payment_method": rental.payment_method.value if rental.payment_method else None,
            "vehicle_condition": rental.vehicle_condition.value if rental.vehicle_condition else None,
            "return_notes": rental.return_notes,
            "damage_notes": rental.damage_notes,
            "cancellation_json": json.dumps(rental.cancellation.to_dict()) if rental.cancellation else None,
            "vehicle_changes_json": json.dumps([change.to_dict() for change in rental.vehicle_changes]),
            "notes": rental.notes,
            "created_at": _to_db(rental.created_at),
            "repriced_at": _to_db(rental.repriced_at),
        }

    def _rental_from_model(self, model: RentalModel) -> Rental:
        return Rental(
            rental_id=model.rental_id,
            vehicle_ref=model.vehicle_ref,
            customer_ref=model.customer_ref,
            start_time=self._from_db(model.start_time),
            end_time=self._from_db(model.end_time),
            status=RentalStatus(model.status),
            base_amount=model.base_amount,
            final_amount=model.final_amount,
            discount_amount=model.discount_amount,
            additional_charges=model.additional_charges,
            total_minutes=model.total_minutes,
            pricing_breakdown=[PricingBlock.from_dict(item) for item in json.loads(model.pricing_breakdown_json or "[]")],
            payment_method=PaymentMethod(model.payment_method) if model.payment_method else None,
            vehicle_condition=VehicleCondition(model.vehicle_condition) if model.vehicle_condition else None,
            return_notes=model.return_notes,
            damage_notes=model.damage_notes,
            cancellation=CancellationInfo.from_dict(json.loads(model.cancellation_json)) if model.cancellation_json else None,
            vehicle_changes=[VehicleChange.from_dict(item) for item in json.loads(model.vehicle_changes_json or "[]")],
            created_at=self._from_db(model.created_at),
            repriced_at=self._from_db(model.repriced_at),
            notes=model.notes,
        )

    def _ledger_values(self, ledger: DailyLedger) -> Dict[str, Any]:
        return {
            "ledger_id": ledger.ledger_id,
            "business_date": ledger.date,
            "status": ledger.status.value,
            "day_started": ledger.day_started,
            "business_start_time": _to_db(ledger.business_start_time),
            "business_end_time": _to_db(ledger.business_end_time),
            "started_by": ledger.started_by,
            "start_notes": ledger.start_notes,
            "ended_by": ledger.ended_by,
            "end_notes": ledger.end_notes,
            "auto_ended": ledger.auto_ended,
            "summary_json": json.dumps(ledger.summary.to_dict()),
            "restart_count": ledger.restart_count,
            "restart_history_json": json.dumps([entry.to_dict() for entry in ledger.restart_history]),
            "created_at": _to_db(ledger.created_at),
            "updated_at": _to_db(ledger.updated_at),
        }

    def _ledger_from_model(self, model: DailyLedgerModel) -> DailyLedger:
        return DailyLedger(
            ledger_id=model.ledger_id,
            date=model.business_date,
            status=LedgerStatus(model.status),
            day_started=model.day_started,
            business_start_time=self._from_db(model.business_start_time),
            business_end_time=self._from_db(model.business_end_time),
            started_by=model.started_by,
            start_notes=model.start_notes,
            ended_by=model.ended_by,
            end_notes=model.end_notes,
            auto_ended=model.auto_ended,
            summary=LedgerSummary.from_dict(json.loads(model.summary_json or "{}")),
            restart_count=model.restart_count,
            restart_history=[RestartEntry.from_dict(item) for item in json.loads(model.restart_history_json or "[]")],
            created_at=self._from_db(model.created_at),
            updated_at=self._from_db(model.updated_at),
        )
