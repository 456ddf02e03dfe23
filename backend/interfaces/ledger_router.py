"""Daily operations (ledger) endpoints."""
from __future__ import annotations

import datetime as dt
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from domain.ledger import DailyLedger, LedgerStatus
from interfaces import deps

router = APIRouter(tags=["daily-operations"])

ledger_service = deps.ledger_service


class StartDayRequest(BaseModel):
    staffName: str = Field(..., min_length=1)
    notes: str = ""
    date: Optional[dt.date] = Field(None, description="Defaults to today; any other date is rejected")


class EndDayRequest(BaseModel):
    staffName: str = Field(..., min_length=1)
    notes: str = ""
    date: Optional[dt.date] = None


class RestartDayRequest(BaseModel):
    staffName: str = Field(..., min_length=1)
    reason: str = ""
    date: Optional[dt.date] = None


class AutoEndRequest(BaseModel):
    includeToday: bool = True


def _ledger_payload(ledger: DailyLedger) -> Dict[str, Any]:
    """Stored ledger plus a live summary while the day is still open."""
    payload = ledger.to_dict()
    if ledger.status != LedgerStatus.ENDED:
        live = ledger_service.with_live_hours(ledger, ledger_service.compute_summary(ledger))
        payload["liveSummary"] = live.to_dict()
    return payload


@router.get("/daily-operations")
def list_ledgers(
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
) -> Dict[str, Any]:
    ledgers = ledger_service.list_ledgers(date_from, date_to)
    return {"ledgers": [ledger.to_dict() for ledger in ledgers], "count": len(ledgers)}


@router.get("/daily-operations/today")
def get_today() -> Dict[str, Any]:
    return _ledger_payload(ledger_service.today())


@router.get("/daily-operations/{day}")
def get_day(day: date) -> Dict[str, Any]:
    return _ledger_payload(ledger_service.get_or_create(day))


@router.post("/daily-operations/start")
def start_day(payload: StartDayRequest) -> Dict[str, Any]:
    day = payload.date or deps.clock.today()
    return _ledger_payload(ledger_service.start_day(day, payload.staffName, payload.notes))


@router.post("/daily-operations/end")
def end_day(payload: EndDayRequest) -> Dict[str, Any]:
    day = payload.date or deps.clock.today()
    return _ledger_payload(ledger_service.end_day(day, payload.staffName, payload.notes))


@router.post("/daily-operations/restart")
def restart_day(payload: RestartDayRequest) -> Dict[str, Any]:
    day = payload.date or deps.clock.today()
    return _ledger_payload(ledger_service.restart_day(day, payload.staffName, payload.reason))


@router.post("/daily-operations/auto-end")
def auto_end(payload: Optional[AutoEndRequest] = None) -> Dict[str, Any]:
    """Cron entry point: close stale days (and today, unless told otherwise)."""
    include_today = payload.includeToday if payload else True
    return ledger_service.run_auto_end(include_today=include_today)
