"""
Fixtures compartidos para los tests del motor de caja

El backend falso es una app FastAPI real montada con httpx.ASGITransport:
el BackendClient se prueba de punta a punta, incluido el /openapi.json que
FastAPI genera para el probe de capacidades.
"""

from collections import Counter
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
import pytest
from fastapi import Body, FastAPI, HTTPException, status
from pydantic import BaseModel

from till_engine.core.config import Settings

SHOP_ID = 1
TODAY = date(2026, 3, 10)
YESTERDAY = date(2026, 3, 9)


# ===== FAKE BACKEND =====

class BackendPaymentType(str, Enum):
    CASH = "cash"
    POS = "pos"
    MOMO = "momo"


class SaleLineIn(BaseModel):
    id: Optional[int] = None
    item_id: int
    quantity_pieces: float
    sale_price_per_piece: int


class SaleCreate(BaseModel):
    shop_id: int
    sale_date: Optional[datetime] = None
    is_credit_sale: bool = False
    payment_type: Optional[BackendPaymentType] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    due_date: Optional[date] = None
    amount_collected_now: int = 0
    credit_balance: int = 0
    lines: List[SaleLineIn]


class ClosureIn(BaseModel):
    shop_id: int
    closure_date: date
    cash_amount: int
    pos_amount: int
    momo_amount: int
    note: Optional[str] = None


class FakeBackend:
    """Estado en memoria detrás del API falso"""

    def __init__(self):
        self.stock_rows: List[Dict[str, Any]] = []
        self.sales: Dict[int, Dict[str, Any]] = {}
        self.next_sale_id = 100
        self.customers: List[Dict[str, Any]] = []
        self.system_totals: Dict[str, Dict[str, Any]] = {}
        self.expense_summaries: Dict[str, Dict[str, Any]] = {}
        self.closures: Dict[str, Dict[str, Any]] = {}
        self.failing: set = set()
        self.conflict_on_commit = False
        self.legacy_customer_fields = False
        self.calls: Counter = Counter()
        self.payloads: List[Dict[str, Any]] = []
        self.cancelled_lines: List[int] = []

    def add_stock(self, item_id: int, name: str, remaining, cost=500, price=1000, sku=None):
        self.stock_rows.append({
            "item_id": item_id,
            "item_name": name,
            "item_sku": sku,
            "remaining_pieces": remaining,
            "item_pieces_per_unit": 1,
            "purchase_cost_per_piece": cost,
            "wholesale_price_per_piece": price,
            "selling_price_per_piece": price,
        })

    def check(self, name: str) -> None:
        self.calls[name] += 1
        if name in self.failing:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"{name} unavailable")


def build_app(state: FakeBackend) -> FastAPI:
    app = FastAPI(title="Fake shop backend")

    @app.get("/stock/")
    async def list_stock(shop_id: int, only_positive: Optional[str] = None):
        state.check("stock")
        rows = state.stock_rows
        if only_positive in ("1", "true"):
            rows = [r for r in rows if float(r["remaining_pieces"]) > 0]
        return rows

    def _store_sale(sale_id: int, payload: SaleCreate) -> Dict[str, Any]:
        stored = payload.model_dump(mode="json")
        stored["id"] = sale_id
        stored["lines"] = [
            {**line, "id": line.get("id") or sale_id * 10 + index}
            for index, line in enumerate(stored["lines"], start=1)
        ]
        state.sales[sale_id] = stored
        return stored

    @app.post("/sales/", status_code=status.HTTP_201_CREATED)
    async def create_sale(payload: SaleCreate):
        state.check("create_sale")
        state.payloads.append(payload.model_dump(mode="json", exclude_unset=True))
        if state.conflict_on_commit:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Stock changed, not enough pieces")
        state.next_sale_id += 1
        return _store_sale(state.next_sale_id, payload)

    @app.put("/sales/{sale_id}")
    async def update_sale(sale_id: int, payload: SaleCreate):
        state.check("update_sale")
        state.payloads.append(payload.model_dump(mode="json", exclude_unset=True))
        if sale_id not in state.sales:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sale not found")
        return _store_sale(sale_id, payload)

    @app.get("/sales/{sale_id}")
    async def get_sale(sale_id: int):
        state.check("get_sale")
        if sale_id not in state.sales:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sale not found")
        return {"sale": state.sales[sale_id]}

    @app.post("/sales/{sale_id}/cancel-line")
    async def cancel_line(sale_id: int, body: Dict[str, Any] = Body(...)):
        state.check("cancel_line")
        line_id = int(body["sale_line_id"])
        sale = state.sales.get(sale_id)
        if sale is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sale not found")
        sale["lines"] = [line for line in sale["lines"] if line["id"] != line_id]
        state.cancelled_lines.append(line_id)
        return {"ok": True}

    @app.get("/customers/")
    async def list_customers(shop_id: Optional[int] = None):
        state.check("customers")
        return {"customers": state.customers}

    @app.post("/customers/", status_code=status.HTTP_201_CREATED)
    async def create_customer(body: Dict[str, Any] = Body(...)):
        state.check("create_customer")
        if state.legacy_customer_fields and "name" in body:
            raise HTTPException(status_code=422, detail=[{"msg": "Field required: customer_name"}])
        customer = {
            "id": len(state.customers) + 1,
            "shop_id": body["shop_id"],
            "name": body.get("name") or body.get("customer_name"),
            "phone": body.get("phone") or body.get("customer_phone") or "",
        }
        state.customers.append(customer)
        return customer

    @app.get("/daily-closures/system-totals")
    async def system_totals(shop_id: int, closure_date: date):
        state.check("system_totals")
        return state.system_totals.get(closure_date.isoformat(), {})

    @app.get("/expenses/summary")
    async def expense_summary(shop_id: int, expense_date: date):
        state.check("expense_summary")
        return state.expense_summaries.get(expense_date.isoformat(), {})

    @app.get("/daily-closures/{shop_id}/{closure_date}")
    async def get_closure(shop_id: int, closure_date: date):
        state.check("closure")
        closure = state.closures.get(closure_date.isoformat())
        if closure is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No closure")
        return closure

    @app.post("/daily-closures/")
    async def save_closure(payload: ClosureIn):
        state.check("save_closure")
        stored = {"id": len(state.closures) + 1, **payload.model_dump(mode="json")}
        state.closures[payload.closure_date.isoformat()] = stored
        return stored

    return app


# ===== FIXTURES =====

@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def test_settings():
    return Settings(
        API_BASE_URL="http://testserver",
        API_TOKEN="test-token",
        ENVIRONMENT="test",
        CAPABILITY_PROBE_ATTEMPTS=2,
        CAPABILITY_PROBE_BACKOFF_SECONDS=0,
    )


@pytest.fixture
def http_client(fake_backend):
    transport = httpx.ASGITransport(app=build_app(fake_backend))
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


@pytest.fixture
def backend_client(test_settings, http_client):
    from till_engine.modules.backend.client import BackendClient

    return BackendClient(test_settings, http=http_client)
