"""Routers for the rental counter: start/complete/cancel, vehicle change and quotes."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from application.rental_service import CancellationRequest, CompletionDetails, StartDetails
from domain.rental import PaymentMethod, RentalStatus, VehicleCondition
from interfaces import deps

router = APIRouter(tags=["rentals"])

rental_service = deps.rental_service
pricing_service = deps.pricing_service


class StartRentalRequest(BaseModel):
    vehicleRef: str = Field(..., min_length=1)
    customerRef: str = Field(..., min_length=1)
    startTime: Optional[datetime] = Field(None, description="Explicit start; otherwise now rounded up")
    roundToMinutes: Optional[int] = Field(None, description="1, 5, 10, 15 or 30")
    notes: Optional[str] = None


class CompleteRentalRequest(BaseModel):
    paymentMethod: PaymentMethod
    endTime: Optional[datetime] = None
    discountAmount: Decimal = Field(Decimal("0"), ge=0)
    additionalCharges: Decimal = Field(Decimal("0"), ge=0)
    vehicleCondition: VehicleCondition = VehicleCondition.GOOD
    returnNotes: Optional[str] = None
    damageNotes: Optional[str] = None


class CancelRentalRequest(BaseModel):
    reason: str
    manualOverride: bool = False
    customReason: Optional[str] = None
    staffNotes: Optional[str] = None
    cancelledBy: str = "Staff"


class ChangeVehicleRequest(BaseModel):
    newVehicleRef: str = Field(..., min_length=1)
    reason: Optional[str] = None


class QuoteRequest(BaseModel):
    startTime: datetime
    endTime: datetime
    discountAmount: Decimal = Field(Decimal("0"), ge=0)
    additionalCharges: Decimal = Field(Decimal("0"), ge=0)


# ================== rentals ==================

@router.post("/rentals")
def start_rental(payload: StartRentalRequest) -> Dict[str, Any]:
    outcome = rental_service.start_rental(
        payload.vehicleRef,
        payload.customerRef,
        StartDetails(start_time=payload.startTime, round_to_minutes=payload.roundToMinutes, notes=payload.notes),
    )
    return outcome.to_dict()


@router.get("/rentals")
def list_rentals(status: Optional[RentalStatus] = Query(None)) -> Dict[str, Any]:
    rentals = rental_service.list_rentals(status)
    return {"rentals": [rental.to_dict() for rental in rentals], "count": len(rentals)}


@router.get("/rentals/{rental_id}")
def get_rental(rental_id: str) -> Dict[str, Any]:
    return rental_service.get_rental(rental_id).to_dict()


@router.post("/rentals/{rental_id}/complete")
def complete_rental(rental_id: str, payload: CompleteRentalRequest) -> Dict[str, Any]:
    outcome = rental_service.complete_rental(
        rental_id,
        CompletionDetails(
            payment_method=payload.paymentMethod,
            end_time=payload.endTime,
            discount_amount=payload.discountAmount,
            additional_charges=payload.additionalCharges,
            vehicle_condition=payload.vehicleCondition,
            return_notes=payload.returnNotes,
            damage_notes=payload.damageNotes,
        ),
    )
    return outcome.to_dict()


@router.post("/rentals/{rental_id}/cancel")
def cancel_rental(rental_id: str, payload: CancelRentalRequest) -> Dict[str, Any]:
    outcome = rental_service.cancel_rental(
        rental_id,
        CancellationRequest(
            reason=payload.reason,
            manual_override=payload.manualOverride,
            custom_reason=payload.customReason,
            staff_notes=payload.staffNotes,
            cancelled_by=payload.cancelledBy,
        ),
    )
    return outcome.to_dict()


@router.post("/rentals/{rental_id}/change-vehicle")
def change_vehicle(rental_id: str, payload: ChangeVehicleRequest) -> Dict[str, Any]:
    return rental_service.change_vehicle(rental_id, payload.newVehicleRef, payload.reason).to_dict()


@router.get("/rentals/{rental_id}/quote")
def quote_rental(rental_id: str) -> Dict[str, Any]:
    """Amount so far for an active rental (read only)."""
    return pricing_service.quote_rental(rental_id)


# ================== pricing ==================

@router.post("/pricing/quote")
def quote_range(payload: QuoteRequest) -> Dict[str, Any]:
    return pricing_service.quote_range(
        payload.startTime, payload.endTime, payload.discountAmount, payload.additionalCharges
    )


@router.get("/pricing/preview")
def preview(
    duration: int = Query(..., description="Duration in minutes"),
    start: Optional[datetime] = Query(None),
) -> Dict[str, Any]:
    return pricing_service.preview(duration, start)


@router.get("/pricing/examples")
def examples(day: Optional[date] = Query(None, alias="date")) -> Dict[str, Any]:
    return pricing_service.examples(day)
