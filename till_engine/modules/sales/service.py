"""
Sale submission and edit sessions

SaleSubmissionCoordinator turns the cart into a create or update request:

1. Validates the draft (fixed order, first failure wins)
2. Builds the payload in the backend's vocabulary (BackendCapabilities)
3. Creates, or updates when a persisted sale is being edited
4. Resets the draft, refreshes stock and customers, closes the edit
   session and tells listeners that sales changed

Edit session: IDLE -> EDITING on load_for_edit; back to IDLE on cancel,
on a successful submit or when loading fails.
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from till_engine.common.exceptions import PermissionDenied, StaleResponse, TillError, ValidationError
from till_engine.common.requests import RequestCoordinator
from till_engine.common.validators import round_money, to_json_number, today_in
from till_engine.core.config import Settings, settings as default_settings
from till_engine.modules.auth.permissions import Permissions
from till_engine.modules.backend.capabilities import BackendCapabilities
from till_engine.modules.sales.cart import SaleCart
from till_engine.modules.sales.credit import check_collection, collected_now, credit_balance
from till_engine.modules.sales.edit_intents import EditIntent, EditIntentCoordinator
from till_engine.modules.sales.schemas import EditState

logger = logging.getLogger(__name__)

SalesChangedListener = Callable[[int], Awaitable[None]]


class SaleSubmissionCoordinator:
    def __init__(
        self,
        client,
        cart: SaleCart,
        stock,
        customers,
        coordinator: RequestCoordinator,
        permissions: Permissions,
        shop_id: int,
        capabilities: Optional[BackendCapabilities] = None,
        intents: Optional[EditIntentCoordinator] = None,
        settings: Settings = default_settings,
    ):
        self.client = client
        self.cart = cart
        self.stock = stock
        self.customers = customers
        self.coordinator = coordinator
        self.permissions = permissions
        self.shop_id = shop_id
        self.capabilities = capabilities or BackendCapabilities.absent()
        self.intents = intents
        self.settings = settings
        self.state = EditState.IDLE
        self._listeners: List[SalesChangedListener] = []

        if intents is not None:
            intents.subscribe(self._on_edit_intent)

    @property
    def edit_resource(self) -> str:
        return f"sale-edit:{self.shop_id}"

    def on_committed(self, listener: SalesChangedListener) -> None:
        """Register an async listener called with the shop id after commits and line cancellations"""
        self._listeners.append(listener)

    # ===== VALIDATION =====

    def validate(self) -> None:
        """Raise ValidationError for the first failing precondition"""
        draft = self.cart.draft
        total = self.cart.sale_total

        if not draft.lines:
            raise ValidationError("Add at least one item before saving the sale.")

        if not draft.is_credit_sale and draft.payment_mode is None:
            raise ValidationError("Select a payment method (cash, card or mobile) or mark the sale as credit.")

        if draft.is_credit_sale and not draft.customer.name.strip():
            raise ValidationError("Customer name is required for a credit sale.")

        if draft.is_credit_sale:
            collected = collected_now(True, draft.amount_collected_now, total)
            message = check_collection(True, collected, total)
            if message:
                raise ValidationError(message)

        stock_message = self.stock.oracle().validate_cart_against_stock(draft.lines, draft.edit_source_sale)
        if stock_message:
            raise ValidationError(stock_message)

    # ===== PAYLOAD =====

    def resolve_work_date(self, work_date: Optional[date]) -> date:
        """Past days only for roles allowed to record past sales"""
        today = today_in(self.settings.SHOP_TIMEZONE)
        if work_date is None or work_date == today:
            return today
        if not self.permissions.can_edit_past_sales:
            logger.debug(f"Role {self.permissions.role.value} cannot record sales on {work_date}; using {today}")
            return today
        return work_date

    def _sale_date_value(self, work_date: Optional[date]) -> str:
        source = self.cart.draft.edit_source_sale
        if self.cart.draft.editing_sale_id and source is not None and source.sale_date:
            return source.sale_date

        date_only = self.capabilities.sale_date_format == "date"
        if work_date is None:
            if date_only:
                return today_in(self.settings.SHOP_TIMEZONE).isoformat()
            return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")

        day = self.resolve_work_date(work_date).isoformat()
        return day if date_only else f"{day}T12:00:00.000Z"

    def build_payload(self, work_date: Optional[date] = None) -> Dict[str, Any]:
        draft = self.cart.draft
        total = self.cart.sale_total
        is_credit = draft.is_credit_sale
        collected = collected_now(is_credit, draft.amount_collected_now, total)
        editing = draft.editing_sale_id is not None

        lines = []
        for line in draft.lines:
            entry: Dict[str, Any] = {
                "item_id": line.item_id,
                "quantity_pieces": to_json_number(line.quantity),
                "sale_price_per_piece": int(line.unit_price),
            }
            if editing and line.server_line_id is not None:
                entry["id"] = line.server_line_id
            lines.append(entry)

        payload: Dict[str, Any] = {
            "shop_id": self.shop_id,
            self.capabilities.sale_date_key: self._sale_date_value(work_date),
            "is_credit_sale": is_credit,
            "amount_collected_now": int(round_money(collected)),
            "credit_balance": int(credit_balance(is_credit, collected, total)),
            "lines": lines,
        }

        if draft.attach_customer or is_credit:
            payload["customer_name"] = draft.customer.name.strip() or None
            payload["customer_phone"] = draft.customer.phone.strip() or None

        if not is_credit and draft.payment_mode is not None:
            payload["payment_type"] = self.capabilities.backend_payment_type(draft.payment_mode)

        if is_credit and self.capabilities.due_date_key and draft.customer.due_date:
            payload[self.capabilities.due_date_key] = draft.customer.due_date.isoformat()

        return payload

    # ===== SUBMIT =====

    async def submit(self, work_date: Optional[date] = None) -> dict:
        """Validate and persist the draft; the draft is kept intact on any failure"""
        self.validate()
        payload = self.build_payload(work_date)
        editing_id = self.cart.draft.editing_sale_id

        if editing_id is not None:
            saved = await self.client.update_sale(editing_id, payload)
            logger.info(f"Sale #{editing_id} updated for shop {self.shop_id}")
        else:
            saved = await self.client.create_sale(payload)
            logger.info(f"Sale #{saved.get('id')} created for shop {self.shop_id}")

        self.cart.reset()
        self._close_edit_session()
        await self._refresh_collaborators()
        await self._notify_committed()
        return saved

    async def _refresh_collaborators(self) -> None:
        for name, collaborator in (("stock", self.stock), ("customers", self.customers)):
            if collaborator is None:
                continue
            try:
                await collaborator.refresh()
            except StaleResponse:
                logger.debug(f"{name} refresh superseded")
            except TillError as e:
                logger.warning(f"Post-commit {name} refresh failed: {e.detail}")

    async def _notify_committed(self) -> None:
        for listener in list(self._listeners):
            try:
                await listener(self.shop_id)
            except TillError as e:
                logger.warning(f"Sales changed listener failed: {e.detail}")

    # ===== EDIT SESSION =====

    async def _on_edit_intent(self, intent: EditIntent) -> None:
        if self.intents is not None:
            self.intents.consume()
        await self.load_for_edit(intent.sale_id, intent.line_id)

    async def load_for_edit(self, sale_id: int, line_id: Optional[int] = None, force: bool = False) -> bool:
        """
        Replace the draft with persisted sale `sale_id`.

        When that sale is already open only `line_id` is focused (unless
        `force`). Returns False when a newer load superseded this one.
        """
        sale_id = int(sale_id)
        if not force and self.state == EditState.EDITING and self.cart.draft.editing_sale_id == sale_id:
            self.cart.focus_server_line(line_id)
            return True

        try:
            sale = await self.coordinator.run(self.edit_resource, lambda: self.client.get_sale(sale_id))
        except StaleResponse:
            return False
        except TillError:
            self.state = EditState.IDLE
            raise

        self.cart.load_persisted(sale, self.capabilities, focus_server_line_id=line_id)
        self.state = EditState.EDITING
        logger.info(f"Editing sale #{sale_id} ({len(sale.lines)} lines)")
        return True

    def cancel_edit(self) -> None:
        self.coordinator.invalidate(self.edit_resource)
        self.cart.reset()
        self._close_edit_session()

    def _close_edit_session(self) -> None:
        self.state = EditState.IDLE
        if self.intents is not None:
            self.intents.clear()

    async def cancel_line(self, sale_id: int, sale_line_id: int) -> dict:
        if not self.permissions.can_cancel_line:
            raise PermissionDenied("Only an admin or manager can cancel a line of a saved sale.")

        result = await self.client.cancel_sale_line(sale_id, sale_line_id)
        logger.info(f"Line #{sale_line_id} of sale #{sale_id} cancelled")

        try:
            await self.stock.refresh()
        except StaleResponse:
            logger.debug("stock refresh superseded")
        except TillError as e:
            logger.warning(f"Stock refresh after line cancel failed: {e.detail}")

        if self.state == EditState.EDITING and self.cart.draft.editing_sale_id == int(sale_id):
            await self.load_for_edit(sale_id, force=True)

        await self._notify_committed()
        return result
