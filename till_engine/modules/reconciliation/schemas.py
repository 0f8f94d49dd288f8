"""
Schemas for the daily closure (till reconciliation)

Inputs come from three independent backend sources; each may be missing:
- SystemTotals: expected collections computed by the backend
- ExpenseSummary: expenses recorded today, per channel
- ClosureSnapshot: the counted figures saved last for the date
"""

from pydantic import BaseModel, Field, AliasChoices, field_validator
from decimal import Decimal
from typing import Optional, Dict, Any
from datetime import date, datetime
from enum import Enum

from till_engine.common.validators import ZERO, parse_amount, parse_ymd, round_money


# ===== ENUMS =====

class Channel(str, Enum):
    CASH = "cash"
    CARD = "card"
    MOBILE = "mobile"


class DiffStatus(str, Enum):
    BALANCED = "balanced"
    SURPLUS = "surplus"
    SHORTAGE = "shortage"


class RefreshTrigger(str, Enum):
    MANUAL = "manual"
    OPEN = "open"
    DATE_CHANGE = "date_change"
    TIMER = "timer"
    FOCUS = "focus"
    VISIBILITY = "visibility"
    SALES_CHANGED = "sales_changed"
    AFTER_SAVE = "after_save"


def _amount(v):
    return parse_amount(v)


def _optional_amount(v):
    # Missing or non-numeric figures stay None so callers can fall back
    if v is None or v == "":
        return None
    return parse_amount(v, fallback=None)


# ===== INPUT SCHEMAS =====

class SystemTotals(BaseModel):
    expected_cash_total: Decimal = ZERO
    expected_card_total: Decimal = ZERO
    expected_mobile_total: Decimal = ZERO
    expected_collections: Decimal = ZERO
    expenses_total: Decimal = ZERO
    total_sold_amount: Decimal = ZERO
    total_profit_realized_today: Decimal = ZERO
    credit_created_today: Decimal = ZERO
    credit_paid_today: Decimal = ZERO

    expected_after_expenses_total: Optional[Decimal] = None
    expected_cash_after_expenses: Optional[Decimal] = None
    expected_card_after_expenses: Optional[Decimal] = None
    expected_mobile_after_expenses: Optional[Decimal] = None
    credit_payers_count_today: Optional[int] = None

    model_config = {"extra": "ignore"}

    @field_validator(
        "expected_cash_total", "expected_card_total", "expected_mobile_total",
        "expected_collections", "expenses_total", "total_sold_amount",
        "total_profit_realized_today", "credit_created_today", "credit_paid_today",
        mode="before",
    )
    @classmethod
    def parse_numbers(cls, v):
        return _amount(v)

    @field_validator(
        "expected_after_expenses_total", "expected_cash_after_expenses",
        "expected_card_after_expenses", "expected_mobile_after_expenses",
        mode="before",
    )
    @classmethod
    def parse_optional_numbers(cls, v):
        return _optional_amount(v)

    @field_validator("credit_payers_count_today", mode="before")
    @classmethod
    def parse_count(cls, v):
        value = _optional_amount(v)
        return None if value is None else int(value)

    def expected_for(self, channel: Channel) -> Decimal:
        return {
            Channel.CASH: self.expected_cash_total,
            Channel.CARD: self.expected_card_total,
            Channel.MOBILE: self.expected_mobile_total,
        }[channel]

    def after_expenses_for(self, channel: Channel) -> Optional[Decimal]:
        return {
            Channel.CASH: self.expected_cash_after_expenses,
            Channel.CARD: self.expected_card_after_expenses,
            Channel.MOBILE: self.expected_mobile_after_expenses,
        }[channel]


class ExpenseSummary(BaseModel):
    expenses_total: Decimal = ZERO
    expenses_cash: Decimal = ZERO
    expenses_card: Decimal = Field(default=ZERO, validation_alias=AliasChoices("expenses_card", "expenses_pos"))
    expenses_momo: Decimal = Field(default=ZERO, validation_alias=AliasChoices("expenses_momo", "expenses_mobile"))

    model_config = {"extra": "ignore", "populate_by_name": True}

    @field_validator("*", mode="before")
    @classmethod
    def parse_numbers(cls, v):
        return _amount(v)

    def for_channel(self, channel: Channel) -> Decimal:
        return {
            Channel.CASH: self.expenses_cash,
            Channel.CARD: self.expenses_card,
            Channel.MOBILE: self.expenses_momo,
        }[channel]


class ClosureSnapshot(BaseModel):
    """One saved closure per (shop, date); saving again overwrites it"""
    id: Optional[int] = None
    shop_id: int
    closure_date: date
    cash_amount: Decimal = ZERO
    pos_amount: Decimal = ZERO
    momo_amount: Decimal = ZERO
    note: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"extra": "ignore"}

    @field_validator("cash_amount", "pos_amount", "momo_amount", mode="before")
    @classmethod
    def parse_numbers(cls, v):
        return _amount(v)

    @field_validator("closure_date", mode="before")
    @classmethod
    def parse_closure_date(cls, v):
        return parse_ymd(v) or v

    def to_payload(self) -> Dict[str, Any]:
        return {
            "shop_id": self.shop_id,
            "closure_date": self.closure_date.isoformat(),
            "cash_amount": int(round_money(self.cash_amount)),
            "pos_amount": int(round_money(self.pos_amount)),
            "momo_amount": int(round_money(self.momo_amount)),
            "note": self.note,
        }


# ===== DERIVED SCHEMAS =====

class CountedFigures(BaseModel):
    """Amounts the cashier counted in each drawer"""
    cash: Decimal = ZERO
    card: Decimal = ZERO
    mobile: Decimal = ZERO

    model_config = {"frozen": True}

    @field_validator("cash", "card", "mobile", mode="before")
    @classmethod
    def parse_numbers(cls, v):
        return _amount(v)

    @property
    def total(self) -> Decimal:
        return self.cash + self.card + self.mobile

    def for_channel(self, channel: Channel) -> Decimal:
        return getattr(self, channel.value)

    @classmethod
    def from_closure(cls, closure: ClosureSnapshot) -> "CountedFigures":
        return cls(cash=closure.cash_amount, card=closure.pos_amount, mobile=closure.momo_amount)


class ChannelReconciliation(BaseModel):
    channel: Channel
    expected: Decimal = Field(description="Expected collections before expenses")
    expenses: Decimal = Field(description="Expenses implied for the channel")
    expected_after_expenses: Decimal
    counted: Decimal
    diff: Decimal = Field(description="counted - expected_after_expenses, sign preserved")
    status: DiffStatus


class ReconciliationResult(BaseModel):
    closure_date: date
    channels: Dict[Channel, ChannelReconciliation]

    expected_total: Decimal = Field(description="Expected collections (all channels)")
    system_expenses_total: Decimal
    summary_expenses_total: Decimal
    effective_expenses_total: Decimal
    expected_after_expenses_total: Decimal
    counted_total: Decimal
    diff_total: Decimal
    status_total: DiffStatus

    total_sold_amount: Decimal = ZERO
    profit_realized: Decimal = ZERO
    remaining_profit: Decimal = Field(default=ZERO, description="Profit realized minus effective expenses")
    credit_created: Decimal = ZERO
    credit_paid: Decimal = ZERO
    credit_payers_count: Optional[int] = None

    system_missing_expenses: bool = Field(
        default=False, description="Expense summary has expenses the system totals do not reflect"
    )
    has_system_totals: bool = True
