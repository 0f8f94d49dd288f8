"""
Draft sale owned by the cashier

SaleCart is the only writer of the SaleDraft. Every change goes through a
transition method that either replaces the draft or raises ValidationError
leaving it untouched. Line admission asks the stock oracle how many pieces
may still be added; the submission flow re-validates the whole cart.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, List, Optional
from uuid import uuid4

from till_engine.common.exceptions import ValidationError
from till_engine.common.validators import ONE, ZERO, format_qty, parse_amount, quantize_quantity, round_money
from till_engine.core.config import Settings, settings as default_settings
from till_engine.modules.sales.schemas import (
    CustomerInfo, PaymentMode, PersistedSale, SaleDraft, SaleLine,
)

logger = logging.getLogger(__name__)


class SaleCart:
    def __init__(self, stock, settings: Settings = default_settings):
        """`stock` exposes `snapshot` and `oracle()` (StockService)"""
        self.stock = stock
        self.settings = settings
        self._draft = SaleDraft()

    # ===== READ =====

    @property
    def draft(self) -> SaleDraft:
        return self._draft

    @property
    def lines(self) -> List[SaleLine]:
        return list(self._draft.lines)

    @property
    def is_empty(self) -> bool:
        return not self._draft.lines

    @property
    def sale_total(self) -> Decimal:
        return sum((line.total for line in self._draft.lines), ZERO)

    @property
    def sale_total_profit(self) -> Decimal:
        return sum((line.profit for line in self._draft.lines), ZERO)

    def get_line(self, line_id: str) -> Optional[SaleLine]:
        return next((line for line in self._draft.lines if line.id == line_id), None)

    def available_for(self, item_id: Optional[int], exclude_line_id: Optional[str] = None) -> Decimal:
        return self.stock.oracle().available_for(
            item_id,
            self._draft.lines,
            edit_source_sale=self._draft.edit_source_sale,
            exclude_line_id=exclude_line_id,
        )

    # ===== LINES =====

    def _quantity(self, raw: Any) -> Decimal:
        return quantize_quantity(parse_amount(raw), self.settings.QUANTITY_DECIMAL_PLACES)

    def _build_line(self, line_id: str, item_id: int, quantity: Decimal, unit_price: int,
                    server_line_id: Optional[int] = None) -> SaleLine:
        cost = self.stock.snapshot.purchase_cost(item_id)
        return SaleLine(
            id=line_id,
            item_id=item_id,
            quantity=quantity,
            unit_price=unit_price,
            total=quantity * unit_price,
            profit=(unit_price - cost) * quantity,
            server_line_id=server_line_id,
        )

    def add_line(self, item_id: Optional[int], quantity: Any, unit_price: Any) -> SaleLine:
        try:
            item_id = int(item_id)
        except (TypeError, ValueError):
            raise ValidationError("Select an item first.")

        qty = self._quantity(quantity)
        if qty <= 0:
            raise ValidationError("Quantity must be greater than 0.")

        price = parse_amount(unit_price)
        if price <= 0:
            raise ValidationError("Unit price must be greater than 0.")

        available = self.available_for(item_id)
        if qty > available + self.settings.STOCK_EPSILON:
            oracle = self.stock.oracle()
            name = self.stock.snapshot.item_name(item_id)
            max_allowed = oracle.max_allowed(item_id, self._draft.edit_source_sale)
            raise ValidationError(
                f'Not enough stock for "{name}". Maximum allowed is {format_qty(max_allowed)} pieces '
                f'({format_qty(available)} still available for this sale).'
            )

        line = self._build_line(uuid4().hex, item_id, qty, int(max(ONE, round_money(price))))
        self._replace(lines=[*self._draft.lines, line], editing_line_id=None)
        logger.debug(f"Added line item={item_id} qty={qty} price={line.unit_price}")
        return line

    def update_line(self, line_id: str, quantity: Any = None, unit_price: Any = None) -> SaleLine:
        """Quantity clamped to >= 0, price rounded to an integer >= 1; cost from the current stock row"""
        current = self.get_line(line_id)
        if current is None:
            raise ValidationError("Line not found in the current sale.")

        qty = current.quantity if quantity is None else max(ZERO, self._quantity(quantity))
        price = current.unit_price if unit_price is None else int(max(ONE, round_money(parse_amount(unit_price))))

        updated = self._build_line(current.id, current.item_id, qty, price, current.server_line_id)
        self._replace(lines=[updated if line.id == line_id else line for line in self._draft.lines])
        return updated

    def remove_line(self, line_id: str) -> None:
        lines = [line for line in self._draft.lines if line.id != line_id]
        editing = None if self._draft.editing_line_id == line_id else self._draft.editing_line_id
        self._replace(lines=lines, editing_line_id=editing)

    def begin_edit_line(self, line_id: Optional[str]) -> None:
        if line_id is not None and self.get_line(line_id) is None:
            raise ValidationError("Line not found in the current sale.")
        self._replace(editing_line_id=line_id)

    def focus_server_line(self, server_line_id: Optional[int]) -> Optional[SaleLine]:
        """Put the line loaded from a persisted line id into in-place editing"""
        if server_line_id is None:
            return None
        line = next((c for c in self._draft.lines if c.server_line_id == int(server_line_id)), None)
        if line is not None:
            self._replace(editing_line_id=line.id)
        return line

    # ===== PAYMENT & CREDIT =====

    def toggle_credit(self, enabled: bool) -> None:
        if enabled:
            collected = self._draft.amount_collected_now
            self._replace(
                is_credit_sale=True,
                payment_mode=None,
                attach_customer=True,
                amount_collected_now=collected if collected.strip() else "0",
            )
        else:
            self._replace(
                is_credit_sale=False,
                amount_collected_now="",
                customer=self._draft.customer.model_copy(update={"due_date": None}),
            )

    def select_payment_mode(self, mode: Optional[PaymentMode]) -> None:
        """Ignored while the sale is on credit"""
        if self._draft.is_credit_sale:
            return
        self._replace(payment_mode=PaymentMode(mode) if mode is not None else None)

    def set_amount_collected_now(self, raw: Any) -> None:
        self._replace(amount_collected_now="" if raw is None else str(raw))

    def set_attach_customer(self, enabled: bool) -> None:
        # Credit sales always carry a customer
        self._replace(attach_customer=bool(enabled) or self._draft.is_credit_sale)

    def set_customer(self, name: Optional[str] = None, phone: Optional[str] = None,
                     due_date: Optional[date] = None) -> None:
        update = {}
        if name is not None:
            update["name"] = name
        if phone is not None:
            update["phone"] = phone
        if due_date is not None:
            update["due_date"] = due_date
        self._replace(customer=self._draft.customer.model_copy(update=update))

    def select_customer(self, customer) -> None:
        """Fill name/phone from a directory entry (None clears the selection)"""
        if customer is None:
            self._replace(selected_customer_id=None)
            return
        self._replace(
            selected_customer_id=customer.id,
            attach_customer=True,
            customer=self._draft.customer.model_copy(update={"name": customer.name, "phone": customer.phone}),
        )

    # ===== WHOLE DRAFT =====

    def load_persisted(self, sale: PersistedSale, capabilities, focus_server_line_id: Optional[int] = None) -> None:
        """Replace the entire draft with a persisted sale opened for editing"""
        lines = [
            self._build_line(
                uuid4().hex,
                int(line.item_id),
                self._quantity(line.quantity),
                int(max(ONE, round_money(line.unit_price))),
                server_line_id=line.id,
            )
            for line in sale.lines
        ]
        is_credit = bool(sale.is_credit_sale)
        name = (sale.customer_name or "").strip()
        phone = (sale.customer_phone or "").strip()

        collected = ""
        if is_credit:
            collected = str(round_money(sale.amount_collected_now)) if sale.amount_collected_now is not None else "0"

        self._draft = SaleDraft(
            lines=lines,
            is_credit_sale=is_credit,
            payment_mode=None if is_credit else capabilities.internal_payment_mode(sale.payment_type),
            attach_customer=is_credit or bool(name or phone),
            customer=CustomerInfo(name=name, phone=phone, due_date=sale.due_date if is_credit else None),
            amount_collected_now=collected,
            editing_sale_id=sale.id,
            edit_source_sale=sale,
        )
        self.focus_server_line(focus_server_line_id)

    def reset(self) -> None:
        self._draft = SaleDraft()

    def _replace(self, **update) -> None:
        self._draft = self._draft.model_copy(update=update)
