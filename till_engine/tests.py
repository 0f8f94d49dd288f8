"""
Tests para la raíz de composición (Till)
"""

import pytest

from till_engine.conftest import SHOP_ID
from till_engine.main import create_till
from till_engine.modules.auth.permissions import Role
from till_engine.modules.reconciliation.schemas import DiffStatus
from till_engine.modules.sales.schemas import PaymentMode


class TestTill:
    @pytest.mark.anyio
    async def test_start_loads_everything_and_close_stops_timer(self, backend_client, test_settings, fake_backend):
        fake_backend.add_stock(1, "Rice", 5, cost=600, price=1000)
        fake_backend.customers = [{"id": 1, "shop_id": SHOP_ID, "name": "Jane", "phone": ""}]

        async with await create_till(SHOP_ID, "Manager", test_settings, client=backend_client) as till:
            await till.start()

            assert till.permissions.role == Role.MANAGER
            assert till.capabilities.payment_map
            assert len(till.stock.snapshot) == 1
            assert [c.name for c in till.customers.customers] == ["Jane"]
            assert till.reconciliation.report().status_total == DiffStatus.BALANCED
            timer = till.reconciliation._timer_task
            assert timer is not None and not timer.done()

        assert till.reconciliation._timer_task is None
        assert timer.cancelled() or timer.done()

    @pytest.mark.anyio
    async def test_committed_sale_reaches_reconciliation(self, backend_client, test_settings, fake_backend):
        fake_backend.add_stock(1, "Rice", 5, cost=600, price=1000)
        till = await create_till(SHOP_ID, "cashier", test_settings, client=backend_client)
        await till.stock.refresh()
        await till.reconciliation.open()
        before = fake_backend.calls["system_totals"]

        till.reconciliation.throttle.reset()
        till.cart.add_line(1, 1, 1000)
        till.cart.select_payment_mode(PaymentMode.CASH)
        await till.sales.submit()

        assert fake_backend.calls["system_totals"] == before + 1
        await till.close()
