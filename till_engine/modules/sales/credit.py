"""
Credit sale bookkeeping

Pure functions over the sale total and the cashier's "collected now" text.
Over-collection is reported as a message, never raised here; the
submission flow turns it into a blocking ValidationError.
"""

from decimal import Decimal
from typing import Any, Optional

from till_engine.common.validators import ZERO, format_money, parse_amount, round_money


def collected_now(is_credit: bool, raw_input: Any, sale_total: Decimal) -> Decimal:
    """Credit: parsed input (never negative). Otherwise the whole total."""
    if not is_credit:
        return Decimal(sale_total)
    return max(ZERO, parse_amount(raw_input))


def credit_balance(is_credit: bool, collected: Decimal, sale_total: Decimal) -> Decimal:
    """max(0, round(total - collected)) for credit sales, 0 otherwise"""
    if not is_credit:
        return ZERO
    return max(ZERO, round_money(Decimal(sale_total) - Decimal(collected)))


def check_collection(is_credit: bool, collected: Decimal, sale_total: Decimal) -> Optional[str]:
    if is_credit and Decimal(collected) > Decimal(sale_total):
        return (
            f"Amount collected now ({format_money(collected)}) cannot be greater "
            f"than the sale total ({format_money(sale_total)})."
        )
    return None
