from pydantic import BaseModel, Field, AliasChoices, field_validator
from typing import Optional


class Customer(BaseModel):
    id: Optional[int] = None
    shop_id: Optional[int] = None
    name: str = Field(default="", validation_alias=AliasChoices("name", "customer_name"))
    phone: str = Field(default="", validation_alias=AliasChoices("phone", "customer_phone"))
    pending: bool = Field(default=False, description="Placeholder shown until the server list reloads")

    model_config = {"extra": "ignore", "populate_by_name": True}

    @field_validator("name", "phone", mode="before")
    @classmethod
    def parse_text(cls, v):
        return "" if v is None else str(v).strip()
