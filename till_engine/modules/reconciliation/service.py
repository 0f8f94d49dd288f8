"""
Daily closure engine for one shop

Keeps the three inputs of a day (system totals, expense summary, last saved
closure), the counted drawers and the selected date. Each input is fetched
through the RequestCoordinator under its own resource key, so a late
response for a previous date never overwrites newer state and one slow
source does not hold back the others.

Refresh triggers:
- manual, open and date change: always run
- timer, window focus, tab visible, sales changed, after save: share one
  throttle gate
"""

import asyncio
import logging
import time
from contextlib import suppress
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from till_engine.common.exceptions import PermissionDenied, StaleResponse, TillError, TransportError
from till_engine.common.requests import RequestCoordinator, Throttle
from till_engine.common.validators import today_in
from till_engine.core.config import Settings, settings as default_settings
from till_engine.modules.auth.permissions import Permissions
from till_engine.modules.reconciliation.calculator import reconcile
from till_engine.modules.reconciliation.schemas import (
    ClosureSnapshot, CountedFigures, ExpenseSummary, ReconciliationResult, RefreshTrigger, SystemTotals,
)

logger = logging.getLogger(__name__)

UNTHROTTLED_TRIGGERS = {RefreshTrigger.MANUAL, RefreshTrigger.OPEN, RefreshTrigger.DATE_CHANGE}


class ReconciliationEngine:
    def __init__(
        self,
        client,
        coordinator: RequestCoordinator,
        permissions: Permissions,
        shop_id: int,
        settings: Settings = default_settings,
        clock: Callable[[], float] = time.monotonic,
        today: Optional[Callable[[], date]] = None,
    ):
        self.client = client
        self.coordinator = coordinator
        self.permissions = permissions
        self.shop_id = shop_id
        self.settings = settings
        self.throttle = Throttle(settings.RECONCILIATION_THROTTLE_SECONDS, clock)
        self._today = today or (lambda: today_in(settings.SHOP_TIMEZONE))

        self.closure_date: date = self._today()
        self.system_totals: Optional[SystemTotals] = None
        self.expense_summary: Optional[ExpenseSummary] = None
        self.last_closure: Optional[ClosureSnapshot] = None
        self.counted = CountedFigures()
        self.counted_touched = False
        self.last_error: Optional[str] = None
        self.last_refreshed_at: Optional[datetime] = None
        self._timer_task: Optional[asyncio.Task] = None

    # ===== DATE & LOCK =====

    def today(self) -> date:
        return self._today()

    def resolve_date(self, requested: Optional[date]) -> date:
        """Past days only for roles allowed to edit past closures; others get today"""
        today = self.today()
        if requested is None or requested == today:
            return today
        if not self.permissions.can_edit_past_closures:
            logger.debug(f"Role {self.permissions.role.value} forced from {requested} to {today}")
            return today
        return requested

    @property
    def is_past(self) -> bool:
        return self.closure_date != self.today()

    @property
    def is_locked(self) -> bool:
        return self.is_past and not self.permissions.can_edit_past_closures

    @property
    def can_save(self) -> bool:
        return not self.is_locked

    def _resource(self, kind: str) -> str:
        return f"{kind}:{self.shop_id}"

    def _reset_day(self, closure_date: date) -> None:
        self.closure_date = closure_date
        self.system_totals = None
        self.expense_summary = None
        self.last_closure = None
        self.counted = CountedFigures()
        self.counted_touched = False
        self.last_error = None

    async def open(self, requested: Optional[date] = None) -> ReconciliationResult:
        self._reset_day(self.resolve_date(requested))
        await self.refresh(RefreshTrigger.OPEN)
        return self.report()

    async def change_date(self, requested: Optional[date]) -> ReconciliationResult:
        """Reset the day and restart all three fetches; in-flight ones are superseded"""
        self._reset_day(self.resolve_date(requested))
        await self.refresh(RefreshTrigger.DATE_CHANGE)
        return self.report()

    # ===== COUNTED FIGURES =====

    def set_counted(self, cash: Any = None, card: Any = None, mobile: Any = None) -> CountedFigures:
        update = {}
        if cash is not None:
            update["cash"] = cash
        if card is not None:
            update["card"] = card
        if mobile is not None:
            update["mobile"] = mobile
        self.counted = CountedFigures(**{**self.counted.model_dump(), **update})
        self.counted_touched = True
        return self.counted

    def report(self) -> ReconciliationResult:
        return reconcile(
            self.closure_date,
            self.system_totals,
            self.expense_summary,
            self.counted,
            tolerance=self.settings.BALANCED_TOLERANCE,
        )

    # ===== REFRESH =====

    def _gate(self, trigger: RefreshTrigger) -> bool:
        if trigger in UNTHROTTLED_TRIGGERS:
            self.throttle.force()
            return True
        if trigger == RefreshTrigger.SALES_CHANGED:
            return self.throttle.allow(self.settings.SALES_SYNC_THROTTLE_SECONDS)
        if trigger == RefreshTrigger.AFTER_SAVE:
            return self.throttle.allow(0)
        return self.throttle.allow()

    async def refresh(self, trigger: RefreshTrigger = RefreshTrigger.MANUAL, silent: Optional[bool] = None) -> bool:
        """
        Fetch the three inputs for the selected date.

        Returns False when the throttle skipped the refresh. A failure of the
        system totals is kept in `last_error` and raised unless silent (only
        manual refreshes are loud by default); expense summary and closure
        failures keep the previous values.
        """
        if silent is None:
            silent = trigger != RefreshTrigger.MANUAL
        if not self._gate(trigger):
            logger.debug(f"Reconciliation refresh ({trigger.value}) throttled")
            return False

        resolved = self.resolve_date(self.closure_date)
        if resolved != self.closure_date:
            self._reset_day(resolved)
        closure_date = self.closure_date

        system_error, _, _ = await asyncio.gather(
            self._load_system_totals(closure_date),
            self._load_expense_summary(closure_date),
            self._load_closure(closure_date),
        )

        if closure_date != self.closure_date:
            return True

        if system_error is not None:
            self.last_error = system_error.detail
            if not silent:
                raise system_error
            return True

        self.last_error = None
        self.last_refreshed_at = datetime.now(timezone.utc)
        return True

    async def _load_system_totals(self, closure_date: date) -> Optional[TransportError]:
        try:
            totals = await self.coordinator.run(
                self._resource("system-totals"),
                lambda: self.client.get_system_totals(self.shop_id, closure_date),
            )
        except StaleResponse:
            return None
        except TransportError as e:
            logger.warning(f"System totals for shop {self.shop_id} on {closure_date} failed: {e.detail}")
            return e
        if closure_date != self.closure_date:
            return None
        self.system_totals = totals
        return None

    async def _load_expense_summary(self, closure_date: date) -> None:
        try:
            summary = await self.coordinator.run(
                self._resource("expense-summary"),
                lambda: self.client.get_expense_summary(self.shop_id, closure_date),
            )
        except StaleResponse:
            return None
        except TransportError as e:
            logger.warning(f"Expense summary for shop {self.shop_id} on {closure_date} failed: {e.detail}")
            return None
        if closure_date != self.closure_date:
            return None
        self.expense_summary = summary
        return None

    async def _load_closure(self, closure_date: date) -> None:
        try:
            closure = await self.coordinator.run(
                self._resource("closure"),
                lambda: self.client.get_closure(self.shop_id, closure_date),
            )
        except StaleResponse:
            return None
        except TransportError as e:
            logger.warning(f"Saved closure for shop {self.shop_id} on {closure_date} failed: {e.detail}")
            return None
        if closure_date != self.closure_date:
            return None
        self.last_closure = closure
        # Pre-fill only until the cashier starts typing
        if closure is not None and not self.counted_touched:
            self.counted = CountedFigures.from_closure(closure)
        return None

    # ===== SAVE =====

    async def save(self, note: Optional[str] = None) -> ClosureSnapshot:
        """Upsert the counted figures for the selected date, then refresh silently"""
        if self.is_locked:
            raise PermissionDenied("Only an owner, manager or admin can save a closure for a past day.")

        closure = ClosureSnapshot(
            shop_id=self.shop_id,
            closure_date=self.closure_date,
            cash_amount=self.counted.cash,
            pos_amount=self.counted.card,
            momo_amount=self.counted.mobile,
            note=note,
        )
        saved = await self.client.save_closure(closure)
        logger.info(
            f"Daily closure saved for shop {self.shop_id} on {saved.closure_date}: "
            f"cash={saved.cash_amount} pos={saved.pos_amount} momo={saved.momo_amount}"
        )
        self.last_closure = saved
        self.counted_touched = False
        await self.refresh(RefreshTrigger.AFTER_SAVE)
        return saved

    # ===== EVENT TRIGGERS =====

    async def notify_sales_changed(self, shop_id: Optional[int] = None) -> bool:
        """Sales changed elsewhere; ignored for other shops"""
        if shop_id is not None and int(shop_id) != int(self.shop_id):
            return False
        return await self.refresh(RefreshTrigger.SALES_CHANGED)

    async def on_focus(self) -> bool:
        return await self.refresh(RefreshTrigger.FOCUS)

    async def on_visibility(self, visible: bool) -> bool:
        if not visible:
            return False
        return await self.refresh(RefreshTrigger.VISIBILITY)

    # ===== PERIODIC =====

    def start_auto_refresh(self) -> asyncio.Task:
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.create_task(self._auto_refresh_loop())
        return self._timer_task

    async def stop_auto_refresh(self) -> None:
        task, self._timer_task = self._timer_task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _auto_refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.RECONCILIATION_REFRESH_SECONDS)
            try:
                await self.refresh(RefreshTrigger.TIMER)
            except TillError as e:
                logger.warning(f"Periodic reconciliation refresh failed: {e.detail}")
