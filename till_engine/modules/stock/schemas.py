from pydantic import BaseModel, Field, AliasChoices, field_validator
from typing import Optional
from decimal import Decimal

from till_engine.common.validators import parse_amount


# Stock snapshot row (read-only, owned by the backend)
class StockRow(BaseModel):
    item_id: int
    item_name: str = ""
    sku: Optional[str] = Field(None, validation_alias=AliasChoices("sku", "item_sku"))
    remaining_pieces: Decimal = Field(default=Decimal("0"), description="Pieces left, fractional allowed")
    pieces_per_unit: Decimal = Field(
        default=Decimal("1"),
        validation_alias=AliasChoices("pieces_per_unit", "item_pieces_per_unit"),
    )
    purchase_cost_per_piece: Decimal = Decimal("0")
    wholesale_price_per_piece: Decimal = Decimal("0")
    selling_price_per_piece: Decimal = Decimal("0")

    model_config = {"extra": "ignore", "populate_by_name": True}

    @field_validator(
        "remaining_pieces", "purchase_cost_per_piece",
        "wholesale_price_per_piece", "selling_price_per_piece",
        mode="before",
    )
    @classmethod
    def parse_numbers(cls, v):
        return parse_amount(v)

    @field_validator("pieces_per_unit", mode="before")
    @classmethod
    def parse_pieces_per_unit(cls, v):
        return parse_amount(v, fallback=Decimal("1"))

    @field_validator("item_name", mode="before")
    @classmethod
    def parse_name(cls, v):
        return "" if v is None else str(v)
