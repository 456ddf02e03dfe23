"""SQLModel ORM tables mirroring the domain entities."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column, DateTime
from sqlmodel import Field, SQLModel


def utc_column(*, index: bool = False, nullable: bool = True) -> Column:
    """Naive UTC timestamp; the repository converts to and from the business zone."""
    return Column(DateTime(timezone=False), index=index, nullable=nullable)


class VehicleModel(SQLModel, table=True):
    vehicle_ref: str = Field(primary_key=True)
    status: str = Field(default="available", index=True)
    model: str = Field(default="")
    plate_number: str = Field(default="")


class RentalModel(SQLModel, table=True):
    rental_id: str = Field(primary_key=True)
    vehicle_ref: str = Field(index=True)
    customer_ref: str = Field(index=True)
    start_time: datetime = Field(sa_column=utc_column(index=True, nullable=False))
    end_time: Optional[datetime] = Field(default=None, sa_column=utc_column())
    status: str = Field(default="active", index=True)
    base_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    final_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    discount_amount: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    additional_charges: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    total_minutes: Optional[int] = None
    pricing_breakdown_json: str = Field(default="[]")
    payment_method: Optional[str] = None
    vehicle_condition: Optional[str] = None
    return_notes: Optional[str] = None
    damage_notes: Optional[str] = None
    cancellation_json: Optional[str] = None
    vehicle_changes_json: str = Field(default="[]")
    notes: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, sa_column=utc_column())
    repriced_at: Optional[datetime] = Field(default=None, sa_column=utc_column())


class DailyLedgerModel(SQLModel, table=True):
    """``business_date`` is made unique by ``database.ensure_unique_ledger_date``."""

    ledger_id: str = Field(primary_key=True)
    business_date: date
    status: str = Field(default="not_started")
    day_started: bool = Field(default=False)
    business_start_time: Optional[datetime] = Field(default=None, sa_column=utc_column())
    business_end_time: Optional[datetime] = Field(default=None, sa_column=utc_column())
    started_by: Optional[str] = None
    start_notes: str = Field(default="")
    ended_by: Optional[str] = None
    end_notes: str = Field(default="")
    auto_ended: bool = Field(default=False)
    summary_json: str = Field(default="{}")
    restart_count: int = Field(default=0)
    restart_history_json: str = Field(default="[]")
    created_at: Optional[datetime] = Field(default=None, sa_column=utc_column())
    updated_at: Optional[datetime] = Field(default=None, sa_column=utc_column())
