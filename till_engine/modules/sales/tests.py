"""
Tests para el módulo de ventas

Cubre:
- SaleCart: admisión contra stock, totales, crédito y modos de pago
- Cálculos de crédito (cobrado ahora / saldo)
- SaleSubmissionCoordinator: validaciones en orden, payload, edición,
  anulación de líneas y fechas por rol
- EditIntentCoordinator
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from till_engine.common.exceptions import ConflictAtCommit, PermissionDenied, TransportError, ValidationError
from till_engine.common.validators import today_in
from till_engine.conftest import SHOP_ID
from till_engine.main import create_till
from till_engine.modules.backend.capabilities import BackendCapabilities
from till_engine.modules.sales.cart import SaleCart
from till_engine.modules.sales.credit import check_collection, collected_now, credit_balance
from till_engine.modules.sales.edit_intents import EditIntentCoordinator
from till_engine.modules.sales.schemas import EditState, PaymentMode, PersistedSale
from till_engine.modules.stock.schemas import StockRow
from till_engine.modules.stock.service import StockAvailabilityOracle, StockSnapshot


class StubStock:
    """Stock source with a fixed snapshot"""

    def __init__(self, rows):
        self.snapshot = StockSnapshot(rows)
        self.refreshes = 0

    def oracle(self):
        return StockAvailabilityOracle(self.snapshot)

    async def refresh(self):
        self.refreshes += 1
        return self.snapshot


# ===== FIXTURES =====

@pytest.fixture
def stock():
    return StubStock([
        StockRow(item_id=1, item_name="A", remaining_pieces=10, purchase_cost_per_piece=600),
        StockRow(item_id=2, item_name="B", remaining_pieces=3, purchase_cost_per_piece=200),
    ])


@pytest.fixture
def cart(stock, test_settings):
    return SaleCart(stock, test_settings)


@pytest.fixture
def persisted_sale():
    return PersistedSale.model_validate({
        "id": 77,
        "sale_date": "2026-03-01T12:00:00Z",
        "is_credit_sale": False,
        "payment_type": "momo",
        "customer": {"name": "Jane", "phone": "0788"},
        "lines": [{"id": 701, "item_id": 2, "qty_pieces": "5", "unit_sale_price": "1000"}],
    })


async def open_till(backend_client, settings, fake_backend, role="cashier"):
    fake_backend.add_stock(1, "A", 10, cost=600, price=1000)
    fake_backend.add_stock(2, "B", "2.5", cost=200, price=400)
    till = await create_till(SHOP_ID, role, settings, client=backend_client)
    await till.stock.refresh()
    return till


# ===== CART =====

class TestAddLine:
    def test_adds_line_with_totals_and_profit(self, cart):
        line = cart.add_line(1, "4", "1000")
        assert line.total == Decimal("4000")
        assert line.profit == Decimal("1600")
        assert cart.sale_total == Decimal("4000")
        assert cart.sale_total_profit == Decimal("1600")

    @pytest.mark.parametrize("item_id, quantity, price, message", [
        (None, "1", "1000", "Select an item"),
        ("", "1", "1000", "Select an item"),
        ("rice", "1", "1000", "Select an item"),
        (1, "0", "1000", "Quantity must be greater than 0"),
        (1, "abc", "1000", "Quantity must be greater than 0"),
        (1, "1", "0", "Unit price must be greater than 0"),
    ])
    def test_rejects_invalid_input(self, cart, item_id, quantity, price, message):
        with pytest.raises(ValidationError) as exc:
            cart.add_line(item_id, quantity, price)
        assert message in exc.value.detail
        assert cart.is_empty

    def test_over_stock_is_rejected_without_mutation(self, cart):
        cart.add_line(1, 4, 1000)
        with pytest.raises(ValidationError) as exc:
            cart.add_line(1, 7, 1000)

        assert '"A"' in exc.value.detail
        assert "10" in exc.value.detail
        assert len(cart.lines) == 1
        assert cart.sale_total == Decimal("4000")

    def test_fractional_quantities_up_to_available(self, cart):
        cart.add_line(2, "2.75", 500)
        cart.add_line(2, "0.25", 500)
        assert cart.available_for(2) == Decimal("0")
        with pytest.raises(ValidationError):
            cart.add_line(2, "0.001", 500)

    def test_quantity_keeps_three_decimals(self, cart):
        line = cart.add_line(1, "1.23456", 1000)
        assert line.quantity == Decimal("1.235")
        assert line.total == Decimal("1235")

    def test_unit_price_rounded_to_integer(self, cart):
        line = cart.add_line(1, 2, "999.5")
        assert line.unit_price == 1000

    def test_sale_total_is_idempotent(self, cart):
        cart.add_line(1, 2, 1000)
        cart.add_line(2, "0.5", 300)
        assert cart.sale_total == cart.sale_total == Decimal("2150")


class TestUpdateAndRemove:
    def test_update_clamps_quantity_and_price(self, cart):
        line = cart.add_line(1, 2, 1000)
        updated = cart.update_line(line.id, quantity="-3", unit_price="0.2")
        assert updated.quantity == Decimal("0")
        assert updated.unit_price == 1
        assert cart.sale_total == Decimal("0")

    def test_update_uses_current_cost(self, cart, stock):
        line = cart.add_line(1, 2, 1000)
        stock.snapshot = StockSnapshot([StockRow(item_id=1, item_name="A", remaining_pieces=10, purchase_cost_per_piece=900)])

        updated = cart.update_line(line.id, quantity=3)
        assert updated.profit == Decimal("300")
        assert updated.total == Decimal("3000")

    def test_lines_are_replaced_not_mutated(self, cart):
        line = cart.add_line(1, 2, 1000)
        cart.update_line(line.id, unit_price=1500)
        assert line.unit_price == 1000
        assert cart.get_line(line.id).unit_price == 1500

    def test_available_excludes_line_being_edited(self, cart):
        line = cart.add_line(1, 4, 1000)
        cart.add_line(1, 2, 1000)
        cart.begin_edit_line(line.id)
        assert cart.available_for(1, exclude_line_id=line.id) == Decimal("8")

    def test_remove_line(self, cart):
        line = cart.add_line(1, 2, 1000)
        cart.begin_edit_line(line.id)
        cart.remove_line(line.id)
        assert cart.is_empty
        assert cart.draft.editing_line_id is None
        assert cart.sale_total == Decimal("0")


class TestPaymentAndCredit:
    def test_enabling_credit_clears_payment_and_attaches_customer(self, cart):
        cart.select_payment_mode(PaymentMode.CASH)
        cart.toggle_credit(True)

        draft = cart.draft
        assert draft.is_credit_sale
        assert draft.payment_mode is None
        assert draft.attach_customer
        assert draft.amount_collected_now == "0"

    def test_payment_mode_ignored_on_credit(self, cart):
        cart.toggle_credit(True)
        cart.select_payment_mode(PaymentMode.CARD)
        assert cart.draft.payment_mode is None

    def test_disabling_credit_clears_due_date_and_collected(self, cart):
        cart.toggle_credit(True)
        cart.set_customer(name="Jane", due_date=date(2026, 4, 1))
        cart.set_amount_collected_now("5000")
        cart.toggle_credit(False)

        assert cart.draft.customer.due_date is None
        assert cart.draft.amount_collected_now == ""
        assert cart.draft.customer.name == "Jane"

    def test_customer_stays_attached_on_credit(self, cart):
        cart.toggle_credit(True)
        cart.set_attach_customer(False)
        assert cart.draft.attach_customer


class TestLoadPersisted:
    def test_replaces_whole_draft(self, cart, persisted_sale):
        cart.add_line(1, 1, 1000)
        capabilities = BackendCapabilities(payment_map={PaymentMode.MOBILE: "momo"})

        cart.load_persisted(persisted_sale, capabilities, focus_server_line_id=701)

        draft = cart.draft
        assert draft.editing_sale_id == 77
        assert draft.payment_mode == PaymentMode.MOBILE
        assert draft.customer.name == "Jane"
        assert draft.attach_customer
        assert [(line.item_id, line.quantity, line.server_line_id) for line in draft.lines] == [(2, Decimal("5.000"), 701)]
        assert draft.editing_line_id == draft.lines[0].id

    def test_edit_allowance_remaining_plus_original(self, cart, persisted_sale):
        # B: remaining 3, original sale had 5 -> up to 8 pieces in the draft
        cart.load_persisted(persisted_sale, BackendCapabilities.absent())

        assert cart.available_for(2) == Decimal("3")
        cart.add_line(2, 3, 1000)
        with pytest.raises(ValidationError):
            cart.add_line(2, "0.001", 1000)
        assert cart.stock.oracle().validate_cart_against_stock(cart.lines, cart.draft.edit_source_sale) is None


# ===== CREDIT =====

class TestCredit:
    def test_non_credit_collects_everything(self):
        assert collected_now(False, "123", Decimal("20000")) == Decimal("20000")
        assert credit_balance(False, Decimal("20000"), Decimal("20000")) == Decimal("0")

    def test_partial_collection(self):
        collected = collected_now(True, "8000", Decimal("20000"))
        assert credit_balance(True, collected, Decimal("20000")) == Decimal("12000")

    def test_full_collection_leaves_no_balance(self):
        collected = collected_now(True, "20000", Decimal("20000"))
        assert credit_balance(True, collected, Decimal("20000")) == Decimal("0")
        assert check_collection(True, collected, Decimal("20000")) is None

    def test_over_collection_is_reported(self):
        collected = collected_now(True, "25,000", Decimal("20000"))
        assert check_collection(True, collected, Decimal("20000")) is not None
        assert credit_balance(True, collected, Decimal("20000")) == Decimal("0")

    def test_negative_or_garbage_input(self):
        assert collected_now(True, "-500", Decimal("1000")) == Decimal("0")
        assert collected_now(True, "", Decimal("1000")) == Decimal("0")

    def test_balance_rounds_half_up(self):
        assert credit_balance(True, Decimal("0"), Decimal("1234.5")) == Decimal("1235")


# ===== EDIT INTENTS =====

class TestEditIntentCoordinator:
    @pytest.mark.anyio
    async def test_pending_until_consumed(self):
        intents = EditIntentCoordinator()
        await intents.start_edit(5, 51)

        assert intents.pending.sale_id == 5
        intent = intents.consume()
        assert intent.line_id == 51
        assert intents.pending is None

    @pytest.mark.anyio
    async def test_subscribers_receive_intents(self):
        intents = EditIntentCoordinator()
        received = []

        async def handler(intent):
            received.append(intent.sale_id)

        unsubscribe = intents.subscribe(handler)
        await intents.start_edit(5)
        unsubscribe()
        await intents.start_edit(6)
        assert received == [5]


# ===== SUBMISSION =====

class TestValidationOrder:
    @pytest.mark.anyio
    async def test_each_precondition_in_order(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        sales, cart = till.sales, till.cart

        with pytest.raises(ValidationError, match="Add at least one item"):
            sales.validate()

        cart.add_line(1, 10, 2000)
        with pytest.raises(ValidationError, match="Select a payment method"):
            sales.validate()

        cart.toggle_credit(True)
        with pytest.raises(ValidationError, match="Customer name is required"):
            sales.validate()

        cart.set_customer(name="Jane")
        cart.set_amount_collected_now("25000")
        with pytest.raises(ValidationError, match="cannot be greater"):
            sales.validate()

        cart.set_amount_collected_now("8000")
        sales.validate()

    @pytest.mark.anyio
    async def test_whole_cart_stock_check(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        line = till.cart.add_line(1, 5, 1000)
        till.cart.add_line(1, 5, 1000)
        till.cart.update_line(line.id, quantity=6)
        till.cart.select_payment_mode(PaymentMode.CASH)

        with pytest.raises(ValidationError, match='Not enough stock for "A"'):
            await till.sales.submit()
        assert fake_backend.calls["create_sale"] == 0


class TestSubmit:
    @pytest.mark.anyio
    async def test_malformed_stock_after_commit_is_not_fatal(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        till.cart.add_line(1, 1, 1000)
        till.cart.select_payment_mode(PaymentMode.CASH)
        fake_backend.stock_rows = [{"item_name": "A", "remaining_pieces": 9}]

        saved = await till.sales.submit()

        assert saved["id"] in fake_backend.sales
        assert till.cart.is_empty
        assert till.sales.state == EditState.IDLE

    @pytest.mark.anyio
    async def test_card_sale_payload_and_post_commit(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        notified = []

        async def on_sales_changed(shop_id):
            notified.append(shop_id)

        till.sales.on_committed(on_sales_changed)
        till.cart.add_line(1, 2, 1000)
        till.cart.add_line(2, "0.5", 400)
        till.cart.select_payment_mode(PaymentMode.CARD)

        saved = await till.sales.submit()

        payload = fake_backend.payloads[-1]
        assert payload["payment_type"] == "pos"
        assert payload["is_credit_sale"] is False
        assert payload["amount_collected_now"] == 2200
        assert payload["credit_balance"] == 0
        assert "customer_name" not in payload
        assert "due_date" not in payload
        assert [line["quantity_pieces"] for line in payload["lines"]] == [2, 0.5]
        assert all("id" not in line for line in payload["lines"])

        assert saved["id"] in fake_backend.sales
        assert till.cart.is_empty
        assert till.sales.state == EditState.IDLE
        assert fake_backend.calls["stock"] >= 2
        assert fake_backend.calls["customers"] == 1
        assert notified == [SHOP_ID]

    @pytest.mark.anyio
    async def test_credit_sale_payload(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        till.cart.add_line(1, 10, 2000)
        till.cart.toggle_credit(True)
        till.cart.set_customer(name="Jane", phone="0788", due_date=date(2026, 4, 1))
        till.cart.set_amount_collected_now("8000")

        await till.sales.submit()

        payload = fake_backend.payloads[-1]
        assert payload["is_credit_sale"] is True
        assert payload["amount_collected_now"] == 8000
        assert payload["credit_balance"] == 12000
        assert payload["customer_name"] == "Jane"
        assert payload["due_date"] == "2026-04-01"
        assert "payment_type" not in payload

    @pytest.mark.anyio
    async def test_conflict_leaves_draft_intact(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        till.cart.add_line(1, 2, 1000)
        till.cart.select_payment_mode(PaymentMode.CASH)
        fake_backend.conflict_on_commit = True

        with pytest.raises(ConflictAtCommit):
            await till.sales.submit()
        assert len(till.cart.lines) == 1
        assert till.cart.draft.payment_mode == PaymentMode.CASH

    @pytest.mark.anyio
    async def test_post_commit_refresh_failure_is_not_raised(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        till.cart.add_line(1, 1, 1000)
        till.cart.select_payment_mode(PaymentMode.CASH)
        fake_backend.failing.update({"stock", "customers"})

        await till.sales.submit()
        assert till.cart.is_empty


class TestWorkDate:
    @pytest.mark.anyio
    async def test_cashier_is_forced_to_today(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend, role="cashier")
        today = today_in(test_settings.SHOP_TIMEZONE)
        till.cart.add_line(1, 1, 1000)
        till.cart.select_payment_mode(PaymentMode.CASH)

        payload = till.sales.build_payload(work_date=today - timedelta(days=3))
        assert payload["sale_date"] == f"{today.isoformat()}T12:00:00.000Z"

    @pytest.mark.anyio
    async def test_owner_keeps_past_day(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend, role="owner")
        past = today_in(test_settings.SHOP_TIMEZONE) - timedelta(days=3)
        till.cart.add_line(1, 1, 1000)

        payload = till.sales.build_payload(work_date=past)
        assert payload["sale_date"] == f"{past.isoformat()}T12:00:00.000Z"

    @pytest.mark.anyio
    async def test_no_work_date_uses_now(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        till.cart.add_line(1, 1, 1000)
        assert till.sales.build_payload()["sale_date"].endswith("Z")


class TestEditSession:
    async def _saved_sale(self, till):
        till.cart.add_line(1, 5, 1000)
        till.cart.select_payment_mode(PaymentMode.MOBILE)
        return await till.sales.submit()

    @pytest.mark.anyio
    async def test_load_edit_and_update(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend, role="manager")
        saved = await self._saved_sale(till)
        server_line_id = saved["lines"][0]["id"]

        assert await till.sales.load_for_edit(saved["id"], server_line_id)
        assert till.sales.state == EditState.EDITING
        assert till.cart.draft.payment_mode == PaymentMode.MOBILE
        assert till.cart.get_line(till.cart.draft.editing_line_id).server_line_id == server_line_id

        till.cart.update_line(till.cart.lines[0].id, quantity=7)
        await till.sales.submit(work_date=date(2020, 1, 1))

        payload = fake_backend.payloads[-1]
        assert fake_backend.calls["update_sale"] == 1
        assert payload["lines"][0]["id"] == server_line_id
        assert payload["sale_date"] == saved["sale_date"]
        assert till.sales.state == EditState.IDLE

    @pytest.mark.anyio
    async def test_same_sale_only_focuses_line(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        saved = await self._saved_sale(till)

        await till.sales.load_for_edit(saved["id"])
        await till.sales.load_for_edit(saved["id"], saved["lines"][0]["id"])

        assert fake_backend.calls["get_sale"] == 1
        assert till.cart.draft.editing_line_id == till.cart.lines[0].id

    @pytest.mark.anyio
    async def test_edit_intent_loads_sale_and_is_cleared(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        saved = await self._saved_sale(till)

        await till.intents.start_edit(saved["id"])

        assert till.sales.state == EditState.EDITING
        assert till.cart.draft.editing_sale_id == saved["id"]
        assert till.intents.pending is None

    @pytest.mark.anyio
    async def test_load_error_returns_to_idle(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        with pytest.raises(TransportError):
            await till.sales.load_for_edit(999)
        assert till.sales.state == EditState.IDLE

    @pytest.mark.anyio
    async def test_cancel_edit(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend)
        saved = await self._saved_sale(till)
        await till.sales.load_for_edit(saved["id"])

        till.sales.cancel_edit()
        assert till.sales.state == EditState.IDLE
        assert till.cart.is_empty


class TestCancelLine:
    @pytest.mark.anyio
    async def test_cashier_cannot_cancel(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend, role="cashier")
        with pytest.raises(PermissionDenied):
            await till.sales.cancel_line(1, 11)
        assert fake_backend.calls["cancel_line"] == 0

    @pytest.mark.anyio
    async def test_admin_cancels_and_refreshes(self, backend_client, test_settings, fake_backend):
        till = await open_till(backend_client, test_settings, fake_backend, role="admin")
        till.cart.add_line(1, 1, 1000)
        till.cart.add_line(2, 1, 400)
        till.cart.select_payment_mode(PaymentMode.CASH)
        saved = await till.sales.submit()
        await till.sales.load_for_edit(saved["id"])
        stock_calls = fake_backend.calls["stock"]

        await till.sales.cancel_line(saved["id"], saved["lines"][0]["id"])

        assert fake_backend.cancelled_lines == [saved["lines"][0]["id"]]
        assert fake_backend.calls["stock"] == stock_calls + 1
        assert [line.item_id for line in till.cart.lines] == [2]
