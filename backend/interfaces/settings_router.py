"""Rate schedule settings: read and update the pricing section of app_config.yaml."""
from __future__ import annotations

import logging
from copy import deepcopy
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from app.config import AppConfig, save_config
from domain.rate_schedule import RateSchedule
from interfaces import deps

logger = logging.getLogger(__name__)

router = APIRouter(tags=["settings"])


class PricingSettingsRequest(BaseModel):
    """Partial update; omitted fields keep their current value."""

    hourlyRate: Optional[Decimal] = Field(None, gt=0)
    graceMinutes: Optional[int] = None
    blockMinutes: Optional[int] = None
    nightChargeTime: Optional[str] = Field(None, description="HH:MM")
    nightMultiplier: Optional[Decimal] = None

    def updates(self) -> Dict[str, Any]:
        fields = {
            "hourlyRate": self.hourlyRate,
            "graceMinutes": self.graceMinutes,
            "blockMinutes": self.blockMinutes,
            "nightChargeTime": self.nightChargeTime,
            "nightMultiplier": self.nightMultiplier,
        }
        return {key: value for key, value in fields.items() if value is not None}


def merged_schedule(payload: PricingSettingsRequest) -> RateSchedule:
    """Current schedule overlaid with the payload; raises ValidationError if invalid."""
    current = deps.rate_provider.get_rate_schedule().to_dict()
    current.update(payload.updates())
    return RateSchedule.from_mapping(current)


def _pricing_payload(schedule: RateSchedule) -> Dict[str, Any]:
    payload = schedule.to_dict()
    payload["halfRate"] = str(schedule.half_rate)
    payload["firstBlockMinutes"] = schedule.first_block_minutes
    return payload


@router.get("/settings/pricing")
def get_pricing() -> Dict[str, Any]:
    return _pricing_payload(deps.rate_provider.get_rate_schedule())


@router.put("/settings/pricing")
def update_pricing(payload: PricingSettingsRequest) -> Dict[str, Any]:
    """Validate, persist to YAML, then refresh runtime services."""
    schedule = merged_schedule(payload)
    raw = deepcopy(deps.settings.raw)
    raw["pricing"] = schedule.to_config()
    save_config(AppConfig(raw=raw))
    deps.reload_settings_from_disk()
    logger.info("Rate schedule updated: %s", schedule.to_dict())
    return _pricing_payload(deps.rate_provider.get_rate_schedule())
