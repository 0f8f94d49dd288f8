"""
Esquemas Pydantic para ventas del POS

- SaleLine: línea del borrador (snapshot inmutable)
- SaleDraft: venta en curso (líneas, pago, crédito, cliente, edición)
- PersistedSale / PersistedSaleLine: venta guardada, leída para edición

PersistedSale acepta los distintos nombres de campo que el backend ha usado
(quantity_pieces/quantity/qty_pieces, customer anidado, ...).
"""

from pydantic import BaseModel, Field, AliasChoices, field_validator, model_validator
from decimal import Decimal
from typing import Optional, List, Any
from datetime import date
from enum import Enum

from till_engine.common.validators import parse_amount, parse_ymd


# ===== ENUMS =====

class PaymentMode(str, Enum):
    CASH = "cash"
    CARD = "card"
    MOBILE = "mobile"


class EditState(str, Enum):
    IDLE = "idle"
    EDITING = "editing"


# ===== DRAFT SCHEMAS =====

class SaleLine(BaseModel):
    """Línea del borrador; update_line reemplaza el snapshot completo"""
    id: str = Field(description="ID local de la línea")
    item_id: int = Field(description="ID del item en stock")
    quantity: Decimal = Field(ge=0, description="Piezas (hasta 3 decimales)")
    unit_price: int = Field(ge=1, description="Precio acordado por pieza")
    total: Decimal = Field(description="quantity x unit_price")
    profit: Decimal = Field(description="(unit_price - costo) x quantity")
    server_line_id: Optional[int] = Field(None, description="ID de la línea guardada (edición)")

    model_config = {"frozen": True}


class CustomerInfo(BaseModel):
    name: str = ""
    phone: str = ""
    due_date: Optional[date] = None


class SaleDraft(BaseModel):
    """Borrador de venta propiedad de SaleCart"""
    lines: List[SaleLine] = Field(default_factory=list)
    is_credit_sale: bool = False
    payment_mode: Optional[PaymentMode] = None
    attach_customer: bool = False
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    selected_customer_id: Optional[int] = None
    amount_collected_now: str = Field(default="", description="Texto crudo del monto cobrado ahora")
    editing_sale_id: Optional[int] = None
    edit_source_sale: Optional["PersistedSale"] = None
    editing_line_id: Optional[str] = None


# ===== PERSISTED SALE SCHEMAS =====

class PersistedSaleLine(BaseModel):
    id: Optional[int] = None
    item_id: int = Field(validation_alias=AliasChoices("item_id", "itemId"))
    quantity: Decimal = Field(
        default=Decimal("0"),
        validation_alias=AliasChoices("quantity_pieces", "quantity", "qty_pieces"),
    )
    unit_price: Decimal = Field(
        default=Decimal("0"),
        validation_alias=AliasChoices("sale_price_per_piece", "unit_sale_price", "unit_price"),
    )

    model_config = {"extra": "ignore", "populate_by_name": True}

    @field_validator("quantity", "unit_price", mode="before")
    @classmethod
    def parse_numbers(cls, v):
        return parse_amount(v)


class PersistedSale(BaseModel):
    id: int
    sale_date: Optional[str] = Field(None, validation_alias=AliasChoices("sale_date", "date", "sale_day", "day"))
    is_credit_sale: bool = False
    payment_type: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    due_date: Optional[date] = Field(
        None, validation_alias=AliasChoices("due_date", "credit_due_date", "customer_due_date")
    )
    amount_collected_now: Optional[Decimal] = None
    credit_balance: Optional[Decimal] = None
    lines: List[PersistedSaleLine] = Field(default_factory=list)

    model_config = {"extra": "ignore", "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def unwrap(cls, data: Any):
        # Sobres {"sale": {...}} y objetos customer anidados
        if isinstance(data, dict) and isinstance(data.get("sale"), dict):
            data = data["sale"]
        if isinstance(data, dict) and isinstance(data.get("customer"), dict):
            customer = data["customer"]
            data = dict(data)
            data.setdefault("customer_name", customer.get("name"))
            data.setdefault("customer_phone", customer.get("phone"))
        return data

    @field_validator("sale_date", mode="before")
    @classmethod
    def parse_sale_date(cls, v):
        return None if v is None else str(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def parse_due_date(cls, v):
        return parse_ymd(v) if v not in (None, "") else None

    @field_validator("amount_collected_now", "credit_balance", mode="before")
    @classmethod
    def parse_money(cls, v):
        return None if v is None else parse_amount(v)


SaleDraft.model_rebuild()
