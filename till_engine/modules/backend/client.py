"""
HTTP collaborator for the till engine

Thin async wrapper over the shop backend's JSON API. Every call either
returns parsed data or raises TransportError (ConflictAtCommit for a 409 on
a sale commit). Several endpoints are tried with fallbacks because deployed
backends differ in trailing slashes, query filters and field names.
"""

import json
import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

import httpx
import pydantic
from fastapi import status

from till_engine.common.exceptions import ConflictAtCommit, TransportError
from till_engine.core.config import Settings, settings as default_settings
from till_engine.modules.customers.schemas import Customer
from till_engine.modules.reconciliation.schemas import ClosureSnapshot, ExpenseSummary, SystemTotals
from till_engine.modules.sales.schemas import PersistedSale
from till_engine.modules.stock.schemas import StockRow

logger = logging.getLogger(__name__)

LEGACY_FIELD_STATUSES = {status.HTTP_400_BAD_REQUEST, status.HTTP_422_UNPROCESSABLE_ENTITY}


def flatten_error_detail(payload: Any) -> Optional[str]:
    """
    Turn a backend error body into one readable line.

    - {"detail": [{"msg": ...}, ...]} -> messages joined with " | "
    - {"detail": "text"} -> "text"
    - anything else under "detail" -> its JSON
    """
    if not isinstance(payload, dict) or "detail" not in payload:
        return None
    detail = payload["detail"]
    if isinstance(detail, list):
        messages = [
            str(d.get("msg")) if isinstance(d, dict) and d.get("msg") else json.dumps(d, default=str)
            for d in detail
        ]
        return " | ".join(messages)
    if isinstance(detail, str):
        return detail
    return json.dumps(detail, default=str)


def _ymd(value) -> str:
    return value.isoformat() if isinstance(value, date) else str(value)


def _parse(model, payload: Any, source: str):
    """Validate a response body; a body of the wrong shape is a TransportError"""
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        logger.warning(f"Unexpected response from {source}: {e}")
        raise TransportError(f"Unexpected response from {source}.")


class BackendClient:
    """Async client for stock, sales, customers, closures and the schema probe"""

    def __init__(self, settings: Settings = default_settings, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.base_url = settings.api_base_url
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.API_TIMEOUT_SECONDS,
            transport=httpx.AsyncHTTPTransport(retries=settings.API_CONNECT_RETRIES),
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ===== LOW LEVEL =====

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {"Content-Type": "application/json", **self.settings.auth_headers}
        try:
            return await self.http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise TransportError(f"Network error: cannot reach API at {self.base_url}. {e}")

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _raise_for_status(self, response: httpx.Response, fallback: str) -> None:
        if response.is_success:
            return
        detail = flatten_error_detail(self._json(response)) or fallback
        logger.warning(f"{response.request.method} {response.request.url.path} -> {response.status_code}: {detail}")
        raise TransportError(detail, status_code=response.status_code)

    async def _get_first(self, paths: Iterable[str], params_list: Iterable[Optional[dict]], fallback: str) -> Any:
        """GET each (path, params) candidate in order; first 2xx wins"""
        last: Optional[httpx.Response] = None
        for path, params in zip(paths, params_list):
            response = await self._send("GET", path, params=params)
            if response.is_success:
                return self._json(response)
            last = response
        self._raise_for_status(last, fallback)

    # ===== STOCK =====

    async def list_stock(self, shop_id: int) -> List[StockRow]:
        """Stock rows of a shop; positive-only filter requested, unfiltered as fallback"""
        payload = await self._get_first(
            ["/stock/", "/stock/", "/stock/"],
            [
                {"shop_id": shop_id, "only_positive": 1},
                {"shop_id": shop_id, "only_positive": "true"},
                {"shop_id": shop_id},
            ],
            "Failed to load stock.",
        )
        rows = payload.get("items", []) if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise TransportError("Unexpected response from /stock/.")
        return [_parse(StockRow, row, "/stock/") for row in rows]

    # ===== SALES =====

    async def _commit_sale(self, method: str, path: str, payload: dict, fallback: str) -> dict:
        response = await self._send(method, path, json=payload)
        if response.status_code == status.HTTP_409_CONFLICT:
            detail = flatten_error_detail(self._json(response)) or fallback
            logger.warning(f"{method} {path} rejected with conflict: {detail}")
            raise ConflictAtCommit(detail)
        self._raise_for_status(response, f"{fallback} Status: {response.status_code}")
        return self._json(response) or {}

    async def create_sale(self, payload: dict) -> dict:
        return await self._commit_sale("POST", "/sales/", payload, "Failed to save sale.")

    async def update_sale(self, sale_id: int, payload: dict) -> dict:
        return await self._commit_sale("PUT", f"/sales/{sale_id}", payload, "Failed to update sale.")

    async def get_sale(self, sale_id: int) -> PersistedSale:
        paths = [f"/sales/{sale_id}", f"/sales/detail/{sale_id}", f"/sales/{sale_id}/"]
        payload = await self._get_first(paths, [None] * len(paths), f"Failed to load sale #{sale_id}.")
        return _parse(PersistedSale, payload, f"/sales/{sale_id}")

    async def cancel_sale_line(self, sale_id: int, sale_line_id: int) -> dict:
        response = await self._send("POST", f"/sales/{sale_id}/cancel-line", json={"sale_line_id": sale_line_id})
        self._raise_for_status(response, f"Failed to cancel line. Status: {response.status_code}")
        return self._json(response) or {}

    # ===== CUSTOMERS =====

    async def list_customers(self, shop_id: int) -> List[Customer]:
        payload = await self._get_first(
            ["/customers/", "/customers/", "/customers/"],
            [{"shop_id": shop_id}, {"shop_id": shop_id, "only_active": "true"}, None],
            "Failed to load customers.",
        )
        rows = payload.get("customers", []) if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise TransportError("Unexpected response from /customers/.")
        customers = [_parse(Customer, row, "/customers/") for row in rows]
        return [c for c in customers if c.shop_id in (None, shop_id)]

    async def create_customer(self, shop_id: int, name: str, phone: str = "") -> Customer:
        """Primary field names first, legacy customer_* names when the body is rejected (400/422)"""
        conventions = [
            {"shop_id": shop_id, "name": name, "phone": phone},
            {"shop_id": shop_id, "customer_name": name, "customer_phone": phone},
        ]
        response = None
        for body in conventions:
            response = await self._send("POST", "/customers/", json=body)
            if response.is_success:
                return _parse(Customer, self._json(response) or {"name": name, "phone": phone}, "POST /customers/")
            if response.status_code not in LEGACY_FIELD_STATUSES:
                break
        self._raise_for_status(response, f"Failed to create customer. Status: {response.status_code}")

    # ===== DAILY CLOSURES =====

    async def get_system_totals(self, shop_id: int, closure_date: date) -> SystemTotals:
        response = await self._send(
            "GET", "/daily-closures/system-totals",
            params={"shop_id": shop_id, "closure_date": _ymd(closure_date)},
        )
        self._raise_for_status(response, f"Failed to load system totals. Status: {response.status_code}")
        return _parse(SystemTotals, self._json(response) or {}, "/daily-closures/system-totals")

    async def get_expense_summary(self, shop_id: int, expense_date: date) -> ExpenseSummary:
        response = await self._send(
            "GET", "/expenses/summary",
            params={"shop_id": shop_id, "expense_date": _ymd(expense_date)},
        )
        self._raise_for_status(response, f"Failed to load expense summary. Status: {response.status_code}")
        return _parse(ExpenseSummary, self._json(response) or {}, "/expenses/summary")

    async def get_closure(self, shop_id: int, closure_date: date) -> Optional[ClosureSnapshot]:
        """Saved closure for the day, None when nothing was saved yet"""
        response = await self._send("GET", f"/daily-closures/{shop_id}/{_ymd(closure_date)}")
        if response.status_code == status.HTTP_404_NOT_FOUND:
            return None
        self._raise_for_status(response, f"Failed to load closure. Status: {response.status_code}")
        payload = self._json(response)
        if not payload:
            return None
        if not isinstance(payload, dict):
            raise TransportError("Unexpected response from /daily-closures/.")
        # Some backends return only the three amounts
        payload = {"shop_id": shop_id, "closure_date": _ymd(closure_date), **payload}
        return _parse(ClosureSnapshot, payload, f"/daily-closures/{shop_id}/{_ymd(closure_date)}")

    async def save_closure(self, closure: ClosureSnapshot) -> ClosureSnapshot:
        body: Dict[str, Any] = closure.to_payload()
        response = await self._send("POST", "/daily-closures/", json=body)
        self._raise_for_status(response, f"Failed to save closure. Status: {response.status_code}")
        payload = self._json(response)
        if not isinstance(payload, dict) or not payload:
            return closure
        payload = {"shop_id": closure.shop_id, "closure_date": _ymd(closure.closure_date), **payload}
        return _parse(ClosureSnapshot, payload, "POST /daily-closures/")

    # ===== SCHEMA =====

    async def get_openapi(self) -> dict:
        response = await self._send("GET", "/openapi.json")
        self._raise_for_status(response, f"Failed to load API schema. Status: {response.status_code}")
        return self._json(response) or {}
