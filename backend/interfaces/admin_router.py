"""Admin-triggered reconciliation jobs."""
from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from interfaces import deps
from interfaces.settings_router import PricingSettingsRequest, merged_schedule

router = APIRouter(prefix="/admin", tags=["admin"])

reconciliation_service = deps.reconciliation_service


class RepriceRequest(BaseModel):
    dateFrom: dt.date
    dateTo: dt.date
    dryRun: bool = Field(True, description="Report only; set false to overwrite stored amounts")
    schedule: Optional[PricingSettingsRequest] = Field(
        None, description="Schedule to apply; omitted fields fall back to the current one"
    )


@router.post("/ledgers/deduplicate")
def deduplicate_ledgers() -> Dict[str, Any]:
    return reconciliation_service.deduplicate_ledgers()


@router.post("/ledgers/{day}/recompute")
def recompute_ledger(day: dt.date) -> Dict[str, Any]:
    return reconciliation_service.recompute_summary(day).to_dict()


@router.post("/reprice")
def reprice(payload: RepriceRequest) -> Dict[str, Any]:
    schedule = merged_schedule(payload.schedule) if payload.schedule else None
    report = reconciliation_service.reprice_historical(
        payload.dateFrom, payload.dateTo, schedule=schedule, dry_run=payload.dryRun
    )
    return report.to_dict()


@router.post("/vehicles/repair-flags")
def repair_vehicle_flags() -> Dict[str, Any]:
    return reconciliation_service.repair_vehicle_flags()
