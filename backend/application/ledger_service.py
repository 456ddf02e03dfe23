"""Daily operations: get-or-create, start/end/restart and the auto-end sweep."""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from app.config import AppConfig
from application.clock import BusinessClock
from application.events import AsyncEventBus, EventType, OperationEvent
from domain.errors import ConflictError, ValidationError
from domain.ledger import DailyLedger, LedgerStatus, LedgerSummary, summarize_rentals
from infrastructure.repository import RentalRepository

logger = logging.getLogger(__name__)

MAX_LIST_DAYS = 366


def new_ledger_id(day: date) -> str:
    return f"LDG-{day.strftime('%Y%m%d')}-{uuid4().hex[:8]}"


class LedgerService:
    def __init__(
        self,
        config: AppConfig,
        repository: RentalRepository,
        clock: BusinessClock,
        event_bus: Optional[AsyncEventBus] = None,
    ):
        self.repo = repository
        self.clock = clock
        self.event_bus = event_bus
        self.update_config(config)

    def update_config(self, config: AppConfig) -> None:
        self.config = config
        self.auto_end_staff = str(config.ledger.get("auto_end_staff", "System Auto-End"))

    # Reads ---------------------------------------------------------------
    def get_or_create(self, day: date) -> DailyLedger:
        def factory() -> DailyLedger:
            now = self.clock.now()
            return DailyLedger(ledger_id=new_ledger_id(day), date=day, created_at=now, updated_at=now)

        return self.repo.get_or_create_ledger(day, factory)

    def today(self) -> DailyLedger:
        return self.get_or_create(self.clock.today())

    def list_ledgers(self, date_from: Optional[date] = None, date_to: Optional[date] = None) -> List[DailyLedger]:
        if date_from and date_to and date_from > date_to:
            raise ValidationError("invalid_range", "'from' must not be after 'to'")
        if date_from and date_to and (date_to - date_from).days > MAX_LIST_DAYS:
            raise ValidationError("invalid_range", f"Range cannot exceed {MAX_LIST_DAYS} days")
        return self.repo.list_ledgers(date_from, date_to)

    # Summary -------------------------------------------------------------
    def compute_summary(self, ledger: DailyLedger, window_end: Optional[datetime] = None) -> LedgerSummary:
        """Summary of the rentals started inside the ledger's window.

        ``window_end`` overrides the stored business end (used while ending the day).
        """
        day_start, day_end = self.clock.day_window(ledger.date)
        start, end = ledger.window(day_start, day_end)
        if window_end is not None:
            end = window_end
        rentals = self.repo.list_rentals(started_from=start, started_before=end)
        customers = {rental.customer_ref for rental in rentals}
        returning = self.repo.customers_seen_before(customers, start)
        return summarize_rentals(rentals, returning)

    def with_live_hours(self, ledger: DailyLedger, summary: LedgerSummary) -> LedgerSummary:
        if ledger.business_start_time is None:
            return summary.with_operating_window(None, None)
        end = ledger.business_end_time or self.clock.now()
        return summary.with_operating_window(ledger.business_start_time, end)

    # Transitions ---------------------------------------------------------
    def start_day(self, day: date, staff: str, notes: str = "") -> DailyLedger:
        """Open today's business day; other dates cannot be started."""
        self._require_staff(staff)
        today = self.clock.today()
        if day != today:
            raise ConflictError(
                "day_not_today",
                f"Only today's operations ({today}) can be started, not {day}",
                {"date": day.isoformat(), "today": today.isoformat()},
            )
        return self._transition(
            day,
            lambda ledger, now: ledger.start(staff, notes, now),
            EventType.DAY_STARTED,
        )

    def end_day(
        self,
        day: date,
        staff: str,
        notes: str = "",
        is_auto: bool = False,
        at: Optional[datetime] = None,
    ) -> DailyLedger:
        """Recompute the summary, then close the day at ``at`` (default now)."""
        self._require_staff(staff)

        def apply(ledger: DailyLedger, now: datetime) -> None:
            closing = self._closing_time(ledger, at or now)
            if ledger.status != LedgerStatus.IN_PROGRESS:
                # let the domain raise the precise reason
                ledger.end(staff, notes, closing, LedgerSummary(), is_auto)
            summary = self.compute_summary(ledger, window_end=closing)
            ledger.end(staff, notes, closing, summary, is_auto)

        ledger = self._transition(day, apply, EventType.DAY_ENDED)
        logger.info(
            "Day %s ended by %s%s: revenue %s from %d completed rentals",
            day, staff, " (auto)" if is_auto else "",
            ledger.summary.total_revenue, ledger.summary.completed_bookings,
        )
        return ledger

    def restart_day(self, day: date, staff: str, reason: str = "") -> DailyLedger:
        self._require_staff(staff)
        ledger = self._transition(
            day,
            lambda ledger, now: ledger.restart(staff, reason, now),
            EventType.DAY_RESTARTED,
        )
        logger.info("Day %s restarted by %s (restart #%d): %s", day, staff, ledger.restart_count, reason)
        return ledger

    def _transition(
        self,
        day: date,
        apply: Callable[[DailyLedger, datetime], None],
        event_type: EventType,
    ) -> DailyLedger:
        ledger = self.get_or_create(day)
        expected = ledger.status
        now = self.clock.now()
        apply(ledger, now)
        ledger.updated_at = now
        if not self.repo.update_ledger_if_status(ledger, expected):
            raise ConflictError(
                "ledger_state_changed",
                f"Ledger for {day} was modified concurrently, reload and retry",
            )
        self._publish(event_type, ledger)
        return ledger

    # Auto-end ------------------------------------------------------------
    def auto_end(self, day: date, at: Optional[datetime] = None) -> Optional[DailyLedger]:
        """End ``day`` automatically; a day that is not in progress is left alone."""
        ledger = self.repo.get_ledger(day)
        if ledger is None or ledger.status != LedgerStatus.IN_PROGRESS:
            return None
        try:
            return self.end_day(day, self.auto_end_staff, "Automatically ended", is_auto=True, at=at)
        except ConflictError as exc:
            # someone else ended or restarted it in between
            logger.info("Auto-end skipped for %s: %s", day, exc.reason)
            return None

    def auto_end_stale(self, now: Optional[datetime] = None) -> List[DailyLedger]:
        """End every ledger still in progress from a day before today, closing it at its midnight."""
        now = now or self.clock.now()
        today = now.date()
        ended = []
        for ledger in self.repo.list_ledgers(date_to=today - timedelta(days=1)):
            if ledger.status != LedgerStatus.IN_PROGRESS:
                continue
            _, day_end = self.clock.day_window(ledger.date)
            result = self.auto_end(ledger.date, at=day_end)
            if result is not None:
                ended.append(result)
        if ended:
            logger.info("Auto-ended %d stale day(s): %s", len(ended), ", ".join(str(l.date) for l in ended))
        return ended

    def run_auto_end(self, include_today: bool = True) -> Dict[str, Any]:
        ended = self.auto_end_stale()
        if include_today:
            today = self.auto_end(self.clock.today())
            if today is not None:
                ended.append(today)
        return {"ended": [ledger.to_dict() for ledger in ended], "count": len(ended)}

    # Helpers -------------------------------------------------------------
    def _closing_time(self, ledger: DailyLedger, closing: datetime) -> datetime:
        """Never before the business start; a past day closes no later than its midnight."""
        if ledger.date < self.clock.today():
            _, day_end = self.clock.day_window(ledger.date)
            closing = min(closing, day_end)
        if ledger.business_start_time is not None:
            closing = max(closing, ledger.business_start_time)
        return closing

    @staticmethod
    def _require_staff(staff: str) -> None:
        if not staff or not staff.strip():
            raise ValidationError("missing_field", "Staff name is required")

    def _publish(self, event_type: EventType, ledger: DailyLedger) -> None:
        if self.event_bus:
            self.event_bus.publish_sync(OperationEvent(event_type, str(ledger.date), {"ledger": ledger.to_dict()}))
