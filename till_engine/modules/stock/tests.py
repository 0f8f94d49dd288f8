"""
Tests para disponibilidad de stock

Cubre:
- available_for nunca negativo y nunca mayor que remaining + original
- Exclusión de la línea en edición
- Validación del carrito completo (mensaje con item y máximo permitido)
- Carga del snapshot desde el backend
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from till_engine.common.requests import RequestCoordinator
from till_engine.conftest import SHOP_ID
from till_engine.modules.sales.schemas import PersistedSale
from till_engine.modules.stock.schemas import StockRow
from till_engine.modules.stock.service import StockAvailabilityOracle, StockService, StockSnapshot


def line(line_id, item_id, quantity):
    return SimpleNamespace(id=line_id, item_id=item_id, quantity=Decimal(str(quantity)))


# ===== FIXTURES =====

@pytest.fixture
def snapshot():
    return StockSnapshot([
        StockRow(item_id=1, item_name="Rice 25kg", remaining_pieces=10, purchase_cost_per_piece=800),
        StockRow(item_id=2, item_name="Sugar", remaining_pieces="2.5", sku="SUG-1"),
        StockRow(item_id=3, item_name="Oil", remaining_pieces=3),
    ])


@pytest.fixture
def oracle(snapshot):
    return StockAvailabilityOracle(snapshot)


@pytest.fixture
def edited_sale():
    return PersistedSale.model_validate({
        "id": 55,
        "lines": [
            {"id": 551, "item_id": 3, "quantity_pieces": 5, "sale_price_per_piece": 1000},
        ],
    })


# ===== SNAPSHOT =====

class TestStockRow:
    def test_wire_aliases_and_parsing(self):
        row = StockRow.model_validate({
            "item_id": 9,
            "item_name": None,
            "item_sku": "X-9",
            "remaining_pieces": "1,250.5",
            "item_pieces_per_unit": None,
        })
        assert row.sku == "X-9"
        assert row.remaining_pieces == Decimal("1250.5")
        assert row.pieces_per_unit == Decimal("1")
        assert row.item_name == ""


class TestStockSnapshot:
    def test_unknown_item_has_nothing_remaining(self, snapshot):
        assert snapshot.remaining(999) == Decimal("0")
        assert snapshot.item_name(999) == "Item #999"

    def test_search_by_name_or_sku(self, snapshot):
        assert [r.item_id for r in snapshot.search("sug-")] == [2]
        assert [r.item_id for r in snapshot.search("")] == [3, 1, 2]


# ===== ORACLE =====

class TestAvailableFor:
    def test_counts_other_lines_of_same_item(self, oracle):
        cart = [line("a", 1, 4), line("b", 2, 1)]
        assert oracle.available_for(1, cart) == Decimal("6")

    def test_excludes_line_being_edited(self, oracle):
        cart = [line("a", 1, 4), line("b", 1, 3)]
        assert oracle.available_for(1, cart, exclude_line_id="b") == Decimal("6")

    def test_never_negative(self, oracle):
        cart = [line("a", 2, 3)]
        assert oracle.available_for(2, cart) == Decimal("0")
        assert oracle.available_for(999, []) == Decimal("0")
        assert oracle.available_for(None, []) == Decimal("0")

    def test_fractional_remaining(self, oracle):
        assert oracle.available_for(2, [line("a", 2, "1.25")]) == Decimal("1.25")

    def test_edit_allowance_adds_original_quantity(self, oracle, edited_sale):
        assert oracle.max_allowed(3, edited_sale) == Decimal("8")
        assert oracle.available_for(3, [line("a", 3, 6)], edit_source_sale=edited_sale) == Decimal("2")
        assert oracle.available_for(3, [line("a", 3, 6)]) == Decimal("0")

    @pytest.mark.parametrize("in_cart", ["0", "1", "2.5", "9.999", "10", "12"])
    def test_bounds(self, oracle, in_cart):
        available = oracle.available_for(1, [line("a", 1, in_cart)])
        assert Decimal("0") <= available <= oracle.max_allowed(1)


class TestValidateCart:
    def test_passes_when_everything_fits(self, oracle):
        assert oracle.validate_cart_against_stock([line("a", 1, 4), line("b", 1, 6)]) is None

    def test_combined_lines_overdraft(self, oracle):
        message = oracle.validate_cart_against_stock([line("a", 1, 4), line("b", 1, 7)])
        assert message is not None
        assert "Rice 25kg" in message
        assert "11" in message
        assert "10" in message

    def test_edit_allows_remaining_plus_original(self, oracle, edited_sale):
        assert oracle.validate_cart_against_stock([line("a", 3, 8)], edited_sale) is None
        message = oracle.validate_cart_against_stock([line("a", 3, "8.001")], edited_sale)
        assert "Oil" in message
        assert "8.001" in message


# ===== SERVICE =====

class TestStockService:
    @pytest.mark.anyio
    async def test_refresh_keeps_positive_rows_only(self, backend_client, fake_backend):
        fake_backend.add_stock(1, "Rice", 10)
        fake_backend.add_stock(2, "Empty", 0)

        service = StockService(backend_client, RequestCoordinator(), SHOP_ID)
        snapshot = await service.refresh()

        assert 1 in snapshot
        assert 2 not in snapshot
        assert service.oracle().available_for(1, []) == Decimal("10")
