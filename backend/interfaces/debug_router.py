"""Debug-only routes: vehicle seeding and business clock control."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from domain.rental import Vehicle, VehicleStatus
from interfaces import deps

router = APIRouter(prefix="/debug", tags=["debug"])


class VehicleSeed(BaseModel):
    vehicleRef: str = Field(..., min_length=1, max_length=32)
    model: str = ""
    plateNumber: str = ""
    status: VehicleStatus = VehicleStatus.AVAILABLE


class SeedVehiclesRequest(BaseModel):
    vehicles: List[VehicleSeed] = Field(..., min_length=1, max_length=200)


class VehicleStatusRequest(BaseModel):
    status: VehicleStatus


class ClockRequest(BaseModel):
    freezeAt: Optional[datetime] = Field(None, description="Pin now() to this instant")
    advanceMinutes: Optional[int] = None
    offsetMinutes: Optional[int] = None
    reset: bool = False


@router.post("/vehicles")
def seed_vehicles(payload: SeedVehiclesRequest) -> Dict[str, Any]:
    """
    Register or overwrite vehicles.

    Overwriting the status of a rented vehicle breaks the rental/vehicle
    invariant on purpose; use /admin/vehicles/repair-flags afterwards.
    """
    for seed in payload.vehicles:
        deps.repository.save_vehicle(
            Vehicle(vehicle_ref=seed.vehicleRef, status=seed.status, model=seed.model, plate_number=seed.plateNumber)
        )
    return {"success": True, "count": len(payload.vehicles)}


@router.get("/vehicles")
def list_vehicles() -> Dict[str, Any]:
    return {"vehicles": [vehicle.to_dict() for vehicle in deps.repository.list_vehicles()]}


@router.post("/vehicles/{vehicle_ref}/status")
def set_vehicle_status(vehicle_ref: str, payload: VehicleStatusRequest) -> Dict[str, Any]:
    deps.repository.set_vehicle_status(vehicle_ref, payload.status)
    return {"success": True, "vehicleRef": vehicle_ref, "status": payload.status.value}


@router.get("/clock")
def get_clock() -> Dict[str, Any]:
    return deps.clock.to_dict()


@router.post("/clock")
def set_clock(payload: ClockRequest) -> Dict[str, Any]:
    clock = deps.clock
    if payload.reset:
        clock.reset()
    if payload.freezeAt is not None:
        clock.freeze(payload.freezeAt)
    if payload.offsetMinutes is not None:
        clock.set_offset(timedelta(minutes=payload.offsetMinutes))
    if payload.advanceMinutes:
        clock.advance(timedelta(minutes=payload.advanceMinutes))
    return clock.to_dict()
