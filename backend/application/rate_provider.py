"""Rate schedule provider backed by app_config.yaml."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from app.config import AppConfig
from domain.errors import ValidationError
from domain.rate_schedule import RateSchedule

logger = logging.getLogger(__name__)


class ConfigRateScheduleProvider:
    """
    Builds a validated ``RateSchedule`` from the current configuration.

    A broken pricing section never fails a billing call: the last schedule that
    validated is served instead (``RateSchedule.default()`` before the first one).
    """

    def __init__(self, config: AppConfig, loader: Optional[Callable[[], AppConfig]] = None):
        self.config = config
        # optional hook that re-reads the config source on every call
        self._loader = loader
        self._last_good: Optional[RateSchedule] = None
        self._lock = threading.Lock()

    def update_config(self, config: AppConfig) -> None:
        self.config = config

    def get_rate_schedule(self) -> RateSchedule:
        try:
            config = self._loader() if self._loader else self.config
            schedule = RateSchedule.from_mapping(config.pricing)
        except (ValidationError, OSError, ValueError, TypeError, AttributeError) as exc:
            with self._lock:
                fallback = self._last_good or RateSchedule.default()
            logger.warning("Rate schedule unavailable (%s), using %s schedule", exc,
                           "last known good" if self._last_good else "default")
            return fallback
        with self._lock:
            self._last_good = schedule
        return schedule

    @property
    def last_known_good(self) -> Optional[RateSchedule]:
        return self._last_good
