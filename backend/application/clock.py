"""Business clock - the single source of "now" for every service."""
from __future__ import annotations

import threading
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

from app.config import AppConfig


class BusinessClock:
    """
    Timezone-aware clock with debug controls.

    - ``offset``: shifts the wall clock (lets the debug API jump to another day)
    - ``freeze(moment)``: pins ``now()``; used by tests and replays
    """

    def __init__(self, tz: tzinfo, offset: timedelta = timedelta(0)) -> None:
        self.tz = tz
        self._offset = offset
        self._frozen: Optional[datetime] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: AppConfig) -> "BusinessClock":
        return cls(ZoneInfo(config.timezone))

    def now(self) -> datetime:
        with self._lock:
            if self._frozen is not None:
                return self._frozen.astimezone(self.tz)
            return datetime.now(timezone.utc).astimezone(self.tz) + self._offset

    def today(self) -> date:
        return self.now().date()

    def localize(self, moment: datetime) -> datetime:
        """Attach the business zone to a naive value, or convert an aware one."""
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)

    def day_window(self, day: date) -> Tuple[datetime, datetime]:
        """Midnight-to-midnight bounds of ``day`` in the business zone (end exclusive)."""
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.tz)
        return start, end

    # ================== debug controls ==================
    def set_offset(self, offset: timedelta) -> None:
        with self._lock:
            self._offset = offset

    def freeze(self, moment: datetime) -> None:
        with self._lock:
            self._frozen = self.localize(moment)

    def advance(self, delta: timedelta) -> None:
        """Move a frozen clock forward, or extend the offset of a running one."""
        with self._lock:
            if self._frozen is not None:
                self._frozen = self._frozen + delta
            else:
                self._offset = self._offset + delta

    def reset(self) -> None:
        with self._lock:
            self._frozen = None
            self._offset = timedelta(0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now().isoformat(),
            "today": self.today().isoformat(),
            "timezone": str(self.tz),
            "frozen": self._frozen is not None,
            "offsetSeconds": int(self._offset.total_seconds()),
        }
