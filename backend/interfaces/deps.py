"""Shared singletons for settings, repository, clock and services.

The storage backend comes from app_config.yaml (``storage.backend``) or the
``STORAGE`` environment variable.
"""
from __future__ import annotations

import logging

from app.config import AppConfig, get_settings
from application.blacklist import StaticBlacklistGate
from application.clock import BusinessClock
from application.events import AsyncEventBus
from application.ledger_service import LedgerService
from application.pricing_service import PricingService
from application.rate_provider import ConfigRateScheduleProvider
from application.reconciliation_service import ReconciliationService
from application.rental_service import RentalService
from infrastructure.memory_store import InMemoryRentalRepository
from infrastructure.repository import RentalRepository
from infrastructure.sqlite_repo import SQLiteRentalRepository

logger = logging.getLogger(__name__)

settings = get_settings()


def _create_repository(clock: BusinessClock) -> RentalRepository:
    backend = settings.database_backend
    if backend == "memory":
        return InMemoryRentalRepository()
    elif backend == "sqlite":
        return SQLiteRentalRepository(settings.sqlite_path, tz=clock.tz)
    else:
        raise ValueError(f"Unknown database backend: {backend}. Supported: sqlite, memory")


clock = BusinessClock.from_config(settings)
repository = _create_repository(clock)
event_bus = AsyncEventBus()

rate_provider = ConfigRateScheduleProvider(settings)
blacklist_gate = StaticBlacklistGate.from_config(settings)

pricing_service = PricingService(rate_provider, clock, repository)
rental_service = RentalService(settings, repository, rate_provider, blacklist_gate, clock, event_bus)
ledger_service = LedgerService(settings, repository, clock, event_bus)
reconciliation_service = ReconciliationService(repository, ledger_service, rate_provider, clock, event_bus)

logger.info("Storage backend: %s, business timezone: %s", settings.database_backend, clock.tz)


def apply_settings(new_settings: AppConfig) -> None:
    """Update global settings reference and refresh dependent singletons."""
    global settings
    settings = new_settings
    rate_provider.update_config(new_settings)
    blacklist_gate.update_config(new_settings)
    rental_service.update_config(new_settings)
    ledger_service.update_config(new_settings)


def reload_settings_from_disk() -> AppConfig:
    """Force re-read of app_config.yaml and propagate changes."""
    get_settings.cache_clear()
    fresh = get_settings()
    apply_settings(fresh)
    return fresh
