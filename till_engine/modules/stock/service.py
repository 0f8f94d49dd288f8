"""
Stock availability for the sale cart

- StockSnapshot: last fetched stock rows for a shop (read-only)
- StockAvailabilityOracle: how many pieces of an item may still enter the cart
- StockService: replaces the snapshot from the backend

Availability is always derived from the last fetched snapshot plus what the
cart already reserves. The snapshot is never decremented locally; only
StockService.refresh() replaces it (after a commit or a line cancellation).

When a persisted sale is being edited, its original quantities are added
back as an allowance, since the backend already deducted them from stock.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, TYPE_CHECKING

from till_engine.common.requests import RequestCoordinator
from till_engine.common.validators import ZERO, format_qty, parse_amount
from till_engine.modules.stock.schemas import StockRow

if TYPE_CHECKING:
    from till_engine.modules.backend.client import BackendClient

logger = logging.getLogger(__name__)


class StockSnapshot:
    """Immutable view of the shop's stock rows keyed by item id"""

    def __init__(self, rows: Optional[Iterable[StockRow]] = None):
        self._rows: Dict[int, StockRow] = {}
        for row in rows or []:
            self._rows[int(row.item_id)] = row

    def get(self, item_id: Optional[int]) -> Optional[StockRow]:
        if item_id is None:
            return None
        return self._rows.get(int(item_id))

    def remaining(self, item_id: int) -> Decimal:
        row = self.get(item_id)
        return max(ZERO, row.remaining_pieces) if row else ZERO

    def purchase_cost(self, item_id: int) -> Decimal:
        row = self.get(item_id)
        return row.purchase_cost_per_piece if row else ZERO

    def item_name(self, item_id: int) -> str:
        row = self.get(item_id)
        if row and row.item_name:
            return row.item_name
        return f"Item #{item_id}"

    def in_stock(self) -> List[StockRow]:
        """Rows with remaining pieces (fractions count), sorted by name"""
        rows = [r for r in self._rows.values() if r.remaining_pieces > 0]
        return sorted(rows, key=lambda r: r.item_name.lower())

    def search(self, query: str) -> List[StockRow]:
        """Filter in-stock rows by name or SKU fragment"""
        q = (query or "").strip().lower()
        if not q:
            return self.in_stock()
        return [
            r for r in self.in_stock()
            if q in r.item_name.lower() or q in (r.sku or "").lower()
        ]

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, item_id) -> bool:
        return self.get(item_id) is not None


def _original_quantities(edit_source_sale) -> Dict[int, Decimal]:
    """Quantity per item in the persisted sale being replaced"""
    totals: Dict[int, Decimal] = {}
    if edit_source_sale is None:
        return totals
    for line in edit_source_sale.lines or []:
        item_id = int(line.item_id)
        totals[item_id] = totals.get(item_id, ZERO) + parse_amount(line.quantity)
    return totals


class StockAvailabilityOracle:
    """
    Admission control for cart lines.

    `cart_lines` are objects with `id`, `item_id` and `quantity`;
    `edit_source_sale` is the persisted sale being edited (or None) whose
    `lines` carry `item_id` and `quantity`.
    """

    def __init__(self, snapshot: StockSnapshot):
        self.snapshot = snapshot

    def original_quantity(self, item_id: int, edit_source_sale=None) -> Decimal:
        return _original_quantities(edit_source_sale).get(int(item_id), ZERO)

    def max_allowed(self, item_id: int, edit_source_sale=None) -> Decimal:
        """remaining + original quantity of the sale being edited"""
        return self.snapshot.remaining(item_id) + self.original_quantity(item_id, edit_source_sale)

    def already_in_cart(self, item_id: int, cart_lines: Iterable, exclude_line_id: Optional[str] = None) -> Decimal:
        return sum(
            (
                parse_amount(line.quantity)
                for line in cart_lines
                if int(line.item_id) == int(item_id) and line.id != exclude_line_id
            ),
            ZERO,
        )

    def available_for(
        self,
        item_id: int,
        cart_lines: Iterable,
        edit_source_sale=None,
        exclude_line_id: Optional[str] = None,
    ) -> Decimal:
        """Pieces that may still be placed into a new or modified line"""
        if item_id is None:
            return ZERO
        allowed = self.max_allowed(item_id, edit_source_sale)
        reserved = self.already_in_cart(item_id, cart_lines, exclude_line_id)
        return max(ZERO, allowed - reserved)

    def validate_cart_against_stock(self, cart_lines: Iterable, edit_source_sale=None) -> Optional[str]:
        """
        Whole-cart check used at submission time.

        Returns None when every item fits, otherwise a message naming the
        first offending item with the requested and maximum quantities.
        """
        requested: Dict[int, Decimal] = {}
        for line in cart_lines:
            item_id = int(line.item_id)
            requested[item_id] = requested.get(item_id, ZERO) + parse_amount(line.quantity)

        originals = _original_quantities(edit_source_sale)

        for item_id, quantity in requested.items():
            max_allowed = self.snapshot.remaining(item_id) + originals.get(item_id, ZERO)
            if quantity > max_allowed:
                name = self.snapshot.item_name(item_id)
                return (
                    f'Not enough stock for "{name}". You are trying to sell {format_qty(quantity)} '
                    f'pieces but maximum allowed (including original sale) is {format_qty(max_allowed)}.'
                )
        return None


class StockService:
    """Owns the current StockSnapshot of a shop"""

    def __init__(self, client: "BackendClient", coordinator: RequestCoordinator, shop_id: int):
        self.client = client
        self.coordinator = coordinator
        self.shop_id = shop_id
        self.snapshot = StockSnapshot()

    @property
    def resource(self) -> str:
        return f"stock:{self.shop_id}"

    async def refresh(self) -> StockSnapshot:
        """Reload stock (positive rows only); a superseded load raises StaleResponse"""
        rows = await self.coordinator.run(self.resource, lambda: self.client.list_stock(self.shop_id))
        positive = [row for row in rows if row.remaining_pieces > 0]
        self.snapshot = StockSnapshot(positive)
        logger.info(f"Loaded stock for shop {self.shop_id}: {len(positive)} items in stock")
        return self.snapshot

    def oracle(self) -> StockAvailabilityOracle:
        return StockAvailabilityOracle(self.snapshot)


