"""Shared pytest fixtures: frozen business clock, in-memory store, fake blacklist."""
from datetime import datetime
from typing import Dict, Optional
from zoneinfo import ZoneInfo

import pytest

from app.config import AppConfig
from application.blacklist import ALLOWED, BlacklistGate, BlacklistVerdict
from application.clock import BusinessClock
from application.ledger_service import LedgerService
from application.rate_provider import ConfigRateScheduleProvider
from application.reconciliation_service import ReconciliationService
from application.rental_service import RentalService
from domain.rate_schedule import RateSchedule
from domain.rental import Vehicle
from infrastructure.memory_store import InMemoryRentalRepository

IST = ZoneInfo("Asia/Kolkata")


def ist(year, month, day, hour=0, minute=0, second=0) -> datetime:
    return datetime(year, month, day, hour, minute, second, tzinfo=IST)


def make_config(**pricing) -> AppConfig:
    base_pricing = {
        "hourly_rate": 80,
        "grace_minutes": 15,
        "block_minutes": 30,
        "night_charge_time": "22:30",
        "night_multiplier": 2,
    }
    base_pricing.update(pricing)
    return AppConfig(
        raw={
            "version": "test",
            "clock": {"timezone": "Asia/Kolkata"},
            "pricing": base_pricing,
            "rental": {
                "id_prefix": "MRT",
                "round_start_minutes": 5,
                "cancellation_window_minutes": 120,
                "vehicle_change_window_minutes": 15,
            },
            "retry": {"vehicle_status_attempts": 3, "vehicle_status_backoff_ms": 0},
            "ledger": {"auto_end_staff": "System Auto-End", "auto_end_interval_seconds": 0},
            "storage": {"backend": "memory"},
        }
    )


class FakeBlacklistGate(BlacklistGate):
    def __init__(self, verdicts: Optional[Dict[str, BlacklistVerdict]] = None):
        self.verdicts = dict(verdicts or {})
        self.checked = []

    def check_customer(self, customer_ref: str) -> BlacklistVerdict:
        self.checked.append(customer_ref)
        return self.verdicts.get(customer_ref, ALLOWED)


@pytest.fixture
def config() -> AppConfig:
    return make_config()


@pytest.fixture
def schedule() -> RateSchedule:
    return RateSchedule.default()


@pytest.fixture
def clock() -> BusinessClock:
    business_clock = BusinessClock(IST)
    business_clock.freeze(ist(2026, 3, 10, 10, 0))
    return business_clock


@pytest.fixture
def repo() -> InMemoryRentalRepository:
    store = InMemoryRentalRepository()
    for ref in ("V1", "V2", "V3", "V4"):
        store.save_vehicle(Vehicle(vehicle_ref=ref, model="Activa", plate_number=f"KA-01-{ref}"))
    return store


@pytest.fixture
def gate() -> FakeBlacklistGate:
    return FakeBlacklistGate()


@pytest.fixture
def rate_provider(config) -> ConfigRateScheduleProvider:
    return ConfigRateScheduleProvider(config)


@pytest.fixture
def rental_service(config, repo, rate_provider, gate, clock) -> RentalService:
    return RentalService(config, repo, rate_provider, gate, clock)


@pytest.fixture
def ledger_service(config, repo, clock) -> LedgerService:
    return LedgerService(config, repo, clock)


@pytest.fixture
def reconciliation_service(repo, ledger_service, rate_provider, clock) -> ReconciliationService:
    return ReconciliationService(repo, ledger_service, rate_provider, clock)
