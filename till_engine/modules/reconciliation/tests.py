"""
Tests para el cierre diario (conciliación de caja)

Cubre:
- Regla de gastos efectivos (max entre totales del sistema y resumen)
- Esperado después de gastos (total y por canal)
- Diferencias con signo y etiqueta "balanced"
- Bloqueo de días pasados por rol
- Throttle de refrescos automáticos y refresco manual
- Latest-wins al cambiar de fecha
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from till_engine.common.exceptions import PermissionDenied, TransportError
from till_engine.common.requests import RequestCoordinator
from till_engine.conftest import SHOP_ID, TODAY, YESTERDAY
from till_engine.modules.auth.permissions import Permissions
from till_engine.modules.reconciliation.calculator import channel_after_expenses, diff_status, reconcile
from till_engine.modules.reconciliation.schemas import (
    Channel, CountedFigures, DiffStatus, ExpenseSummary, RefreshTrigger, SystemTotals,
)
from till_engine.modules.reconciliation.service import ReconciliationEngine


SYSTEM_TOTALS = {
    "expected_cash_total": 50000,
    "expected_card_total": 20000,
    "expected_mobile_total": 30000,
    "expected_collections": 100000,
    "expenses_total": 0,
    "expected_after_expenses_total": 100000,
    "total_sold_amount": 120000,
    "total_profit_realized_today": 15000,
    "credit_created_today": 20000,
    "credit_paid_today": 5000,
    "credit_payers_count_today": 2,
}


def make_engine(client, settings, role="cashier", clock=None, today=None):
    clock = clock if clock is not None else [0.0]
    today = today if today is not None else [TODAY]
    return ReconciliationEngine(
        client,
        RequestCoordinator(),
        Permissions.for_role(role),
        SHOP_ID,
        settings,
        clock=lambda: clock[0],
        today=lambda: today[0],
    )


class GatedClient:
    """Delegates to the real client, holding system totals of gated dates"""

    def __init__(self, inner, ignore_cancel=False):
        self.inner = inner
        self.ignore_cancel = ignore_cancel
        self.gates = {}

    async def get_system_totals(self, shop_id, closure_date):
        gate = self.gates.get(closure_date)
        if gate is not None:
            try:
                await gate.wait()
            except asyncio.CancelledError:
                if not self.ignore_cancel:
                    raise
                await gate.wait()
        return await self.inner.get_system_totals(shop_id, closure_date)

    async def get_expense_summary(self, shop_id, expense_date):
        return await self.inner.get_expense_summary(shop_id, expense_date)

    async def get_closure(self, shop_id, closure_date):
        return await self.inner.get_closure(shop_id, closure_date)

    async def save_closure(self, closure):
        return await self.inner.save_closure(closure)


# ===== CALCULATOR =====

class TestReconcile:
    def test_diff_is_counted_minus_expected_after_expenses(self):
        system = SystemTotals.model_validate({**SYSTEM_TOTALS})
        counted = CountedFigures(cash=49000, card=20000, mobile="30,500")

        result = reconcile(TODAY, system, ExpenseSummary(), counted)

        assert result.channels[Channel.CASH].diff == Decimal("-1000")
        assert result.channels[Channel.CASH].status == DiffStatus.SHORTAGE
        assert result.channels[Channel.CARD].diff == Decimal("0")
        assert result.channels[Channel.CARD].status == DiffStatus.BALANCED
        assert result.channels[Channel.MOBILE].diff == Decimal("500")
        assert result.channels[Channel.MOBILE].status == DiffStatus.SURPLUS
        assert result.diff_total == result.counted_total - result.expected_after_expenses_total == Decimal("-500")

    @pytest.mark.parametrize("counted", [
        CountedFigures(),
        CountedFigures(cash=50000, card=20000, mobile=30000),
        CountedFigures(cash=1, card=-5, mobile="99999.5"),
    ])
    def test_diff_identity_for_every_channel(self, counted):
        system = SystemTotals.model_validate(SYSTEM_TOTALS)
        summary = ExpenseSummary(expenses_total=4000, expenses_cash=3000, expenses_card=1000)

        result = reconcile(TODAY, system, summary, counted)

        for channel, row in result.channels.items():
            assert row.diff == counted.for_channel(channel) - row.expected_after_expenses
        assert result.diff_total == counted.total - result.expected_after_expenses_total

    def test_system_missing_expenses_uses_summary(self):
        system = SystemTotals.model_validate(SYSTEM_TOTALS)
        summary = ExpenseSummary.model_validate({"expenses_total": 3000, "expenses_cash": 3000})

        result = reconcile(TODAY, system, summary, CountedFigures())

        assert result.effective_expenses_total == Decimal("3000")
        assert result.expected_after_expenses_total == Decimal("97000")
        assert result.channels[Channel.CASH].expected_after_expenses == Decimal("47000")
        assert result.system_missing_expenses
        assert result.remaining_profit == Decimal("12000")

    def test_backend_after_expenses_trusted_when_expenses_agree(self):
        system = SystemTotals.model_validate({
            **SYSTEM_TOTALS, "expenses_total": 3000, "expected_after_expenses_total": 96999,
        })
        summary = ExpenseSummary(expenses_total="3000.4")

        result = reconcile(TODAY, system, summary, CountedFigures())

        assert result.expected_after_expenses_total == Decimal("96999")
        assert not result.system_missing_expenses

    def test_per_channel_backend_figure(self):
        summary = ExpenseSummary(expenses_cash=3000)
        consistent = SystemTotals.model_validate({**SYSTEM_TOTALS, "expected_cash_after_expenses": 47000})
        under_reported = SystemTotals.model_validate({**SYSTEM_TOTALS, "expected_cash_after_expenses": 50000})

        assert channel_after_expenses(consistent, summary, Channel.CASH) == Decimal("47000")
        assert channel_after_expenses(under_reported, summary, Channel.CASH) == Decimal("47000")
        assert channel_after_expenses(under_reported, ExpenseSummary(), Channel.CASH) == Decimal("50000")

    def test_missing_inputs_are_zero(self):
        result = reconcile(TODAY, None, None, CountedFigures(cash=100))
        assert not result.has_system_totals
        assert result.diff_total == Decimal("100")

    def test_balanced_label_never_changes_the_value(self):
        assert diff_status(Decimal("0.6")) == DiffStatus.BALANCED
        assert diff_status(Decimal("-0.99")) == DiffStatus.BALANCED
        assert diff_status(Decimal("-1")) == DiffStatus.SHORTAGE

        system = SystemTotals(expected_cash_total=Decimal("100.4"), expected_collections=Decimal("100.4"))
        result = reconcile(TODAY, system, None, CountedFigures(cash=100))
        assert result.channels[Channel.CASH].diff == Decimal("-0.4")


# ===== ENGINE =====

class TestDateLock:
    @pytest.mark.anyio
    async def test_cashier_is_forced_to_today(self, backend_client, test_settings):
        engine = make_engine(backend_client, test_settings, role="cashier")
        await engine.open(YESTERDAY)
        assert engine.closure_date == TODAY

        await engine.change_date(YESTERDAY)
        assert engine.closure_date == TODAY

    @pytest.mark.anyio
    async def test_cashier_save_goes_to_today(self, backend_client, test_settings, fake_backend):
        engine = make_engine(backend_client, test_settings, role="cashier")
        await engine.open(YESTERDAY)
        engine.set_counted(cash=1000)

        saved = await engine.save()
        assert saved.closure_date == TODAY
        assert YESTERDAY.isoformat() not in fake_backend.closures

    @pytest.mark.parametrize("role", ["owner", "manager", "admin"])
    @pytest.mark.anyio
    async def test_elevated_roles_keep_and_save_past_day(self, backend_client, test_settings, fake_backend, role):
        engine = make_engine(backend_client, test_settings, role=role)
        await engine.open(YESTERDAY)
        assert engine.closure_date == YESTERDAY
        assert engine.is_past and not engine.is_locked

        engine.set_counted(cash="1,000.6", card=0, mobile=500)
        saved = await engine.save(note="late count")

        stored = fake_backend.closures[YESTERDAY.isoformat()]
        assert stored["cash_amount"] == 1001
        assert stored["note"] == "late count"
        assert saved.closure_date == YESTERDAY

    @pytest.mark.anyio
    async def test_day_rollover_locks_cashier_until_refresh(self, backend_client, test_settings):
        today = [TODAY]
        engine = make_engine(backend_client, test_settings, role="cashier", today=today)
        await engine.open()
        today[0] = TODAY + timedelta(days=1)

        assert engine.is_locked
        with pytest.raises(PermissionDenied):
            await engine.save()

        await engine.refresh()
        assert engine.closure_date == today[0]
        assert engine.can_save


class TestRefresh:
    @pytest.mark.anyio
    async def test_open_loads_three_inputs_and_prefills(self, backend_client, test_settings, fake_backend):
        fake_backend.system_totals[TODAY.isoformat()] = SYSTEM_TOTALS
        fake_backend.expense_summaries[TODAY.isoformat()] = {"expenses_total": 3000, "expenses_cash": 3000}
        fake_backend.closures[TODAY.isoformat()] = {
            "shop_id": SHOP_ID, "closure_date": TODAY.isoformat(),
            "cash_amount": 47000, "pos_amount": 20000, "momo_amount": 30000,
        }
        engine = make_engine(backend_client, test_settings)

        result = await engine.open()

        assert engine.counted == CountedFigures(cash=47000, card=20000, mobile=30000)
        assert result.expected_after_expenses_total == Decimal("97000")
        assert result.diff_total == Decimal("0")
        assert engine.last_refreshed_at is not None
        assert engine.last_error is None

    @pytest.mark.anyio
    async def test_typed_figures_are_not_overwritten(self, backend_client, test_settings, fake_backend):
        fake_backend.closures[TODAY.isoformat()] = {
            "shop_id": SHOP_ID, "closure_date": TODAY.isoformat(),
            "cash_amount": 47000, "pos_amount": 0, "momo_amount": 0,
        }
        engine = make_engine(backend_client, test_settings)
        await engine.open()
        engine.set_counted(cash=5)

        await engine.refresh()
        assert engine.counted.cash == Decimal("5")
        assert engine.last_closure.cash_amount == Decimal("47000")

    @pytest.mark.anyio
    async def test_throttle_and_manual_bypass(self, backend_client, test_settings, fake_backend):
        clock = [0.0]
        engine = make_engine(backend_client, test_settings, clock=clock)
        await engine.open()
        assert fake_backend.calls["system_totals"] == 1

        clock[0] = 10.0
        assert await engine.on_focus()
        clock[0] = 10.5
        assert not await engine.on_visibility(True)
        assert not await engine.notify_sales_changed(SHOP_ID)
        assert fake_backend.calls["system_totals"] == 2

        clock[0] = 10.6
        assert await engine.refresh()
        assert fake_backend.calls["system_totals"] == 3

    @pytest.mark.anyio
    async def test_sales_changed_is_scoped_to_shop(self, backend_client, test_settings, fake_backend):
        clock = [0.0]
        engine = make_engine(backend_client, test_settings, clock=clock)
        await engine.open()
        clock[0] = 1.2

        assert not await engine.notify_sales_changed(99)
        assert await engine.notify_sales_changed(SHOP_ID)
        assert fake_backend.calls["system_totals"] == 2

    @pytest.mark.anyio
    async def test_hidden_tab_does_not_refresh(self, backend_client, test_settings, fake_backend):
        clock = [0.0]
        engine = make_engine(backend_client, test_settings, clock=clock)
        clock[0] = 100.0
        assert not await engine.on_visibility(False)
        assert fake_backend.calls["system_totals"] == 0

    @pytest.mark.anyio
    async def test_save_triggers_refresh_inside_window(self, backend_client, test_settings, fake_backend):
        engine = make_engine(backend_client, test_settings)
        await engine.open()
        engine.set_counted(cash=100)

        await engine.save()
        assert fake_backend.calls["system_totals"] == 2
        assert not engine.counted_touched

    @pytest.mark.anyio
    async def test_system_totals_failure(self, backend_client, test_settings, fake_backend):
        fake_backend.system_totals[TODAY.isoformat()] = SYSTEM_TOTALS
        engine = make_engine(backend_client, test_settings)
        await engine.open()

        fake_backend.failing.add("system_totals")
        with pytest.raises(TransportError):
            await engine.refresh()
        assert engine.last_error == "system_totals unavailable"
        assert engine.system_totals.expected_collections == Decimal("100000")

        engine.throttle.reset()
        assert await engine.on_focus()

    @pytest.mark.anyio
    async def test_expense_summary_failure_keeps_previous(self, backend_client, test_settings, fake_backend):
        fake_backend.expense_summaries[TODAY.isoformat()] = {"expenses_total": 3000}
        engine = make_engine(backend_client, test_settings)
        await engine.open()

        fake_backend.failing.add("expense_summary")
        await engine.refresh()
        assert engine.expense_summary.expenses_total == Decimal("3000")
        assert engine.last_error is None

    @pytest.mark.anyio
    async def test_periodic_refresh(self, backend_client, test_settings, fake_backend):
        settings = test_settings.model_copy(update={
            "RECONCILIATION_REFRESH_SECONDS": 0.01,
            "RECONCILIATION_THROTTLE_SECONDS": 0.0,
        })
        engine = ReconciliationEngine(
            backend_client, RequestCoordinator(), Permissions.for_role("cashier"), SHOP_ID, settings,
            today=lambda: TODAY,
        )
        engine.start_auto_refresh()
        await asyncio.sleep(0.1)
        await engine.stop_auto_refresh()

        calls = fake_backend.calls["system_totals"]
        assert calls >= 1
        await asyncio.sleep(0.05)
        assert fake_backend.calls["system_totals"] == calls

    @pytest.mark.anyio
    async def test_closure_with_only_amounts_prefills(self, backend_client, test_settings, fake_backend):
        clock = [0.0]
        engine = make_engine(backend_client, test_settings, clock=clock)
        await engine.open()
        fake_backend.closures[TODAY.isoformat()] = {"cash_amount": 5000, "pos_amount": 0, "momo_amount": 0}

        clock[0] = 10.0
        assert await engine.refresh(RefreshTrigger.FOCUS)
        assert engine.counted.cash == Decimal("5000")
        assert engine.last_closure.shop_id == SHOP_ID
        assert engine.last_closure.closure_date == TODAY

    @pytest.mark.anyio
    async def test_malformed_closure_keeps_timer_running(self, backend_client, test_settings, fake_backend):
        fake_backend.closures[TODAY.isoformat()] = {"closure_date": "yesterday", "cash_amount": 5000}
        settings = test_settings.model_copy(update={
            "RECONCILIATION_REFRESH_SECONDS": 0.01,
            "RECONCILIATION_THROTTLE_SECONDS": 0.0,
        })
        engine = ReconciliationEngine(
            backend_client, RequestCoordinator(), Permissions.for_role("cashier"), SHOP_ID, settings,
            today=lambda: TODAY,
        )
        task = engine.start_auto_refresh()
        await asyncio.sleep(0.1)

        assert not task.done()
        assert fake_backend.calls["closure"] >= 2
        assert engine.last_closure is None
        await engine.stop_auto_refresh()


class TestLatestWins:
    @pytest.mark.parametrize("ignore_cancel", [False, True])
    @pytest.mark.anyio
    async def test_late_response_for_previous_date_is_discarded(
        self, backend_client, test_settings, fake_backend, ignore_cancel
    ):
        fake_backend.system_totals[YESTERDAY.isoformat()] = {**SYSTEM_TOTALS, "expected_collections": 111}
        fake_backend.system_totals[TODAY.isoformat()] = {**SYSTEM_TOTALS, "expected_collections": 222}
        client = GatedClient(backend_client, ignore_cancel=ignore_cancel)
        client.gates[YESTERDAY] = asyncio.Event()
        engine = make_engine(client, test_settings, role="owner")

        first = asyncio.ensure_future(engine.change_date(YESTERDAY))
        for _ in range(5):
            await asyncio.sleep(0)

        await engine.change_date(TODAY)
        assert engine.system_totals.expected_collections == Decimal("222")

        client.gates[YESTERDAY].set()
        await first

        assert engine.closure_date == TODAY
        assert engine.system_totals.expected_collections == Decimal("222")
        assert engine.report().expected_total == Decimal("222")
