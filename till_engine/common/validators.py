"""
Validadores y normalizadores de entrada para el POS
"""
import math
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional
from zoneinfo import ZoneInfo


ZERO = Decimal("0")
ONE = Decimal("1")

_YMD_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def normalize_number_string(raw: Any) -> str:
    """
    Quita comas y espacios de un número escrito a mano.
    "1,200.25 " -> "1200.25"
    """
    if raw is None:
        return ""
    return re.sub(r'[, ]+', '', str(raw)).strip()


def parse_amount(raw: Any, fallback: Decimal = ZERO) -> Decimal:
    """
    Convierte montos o cantidades (texto del cajero o valores del API).
    Formatos válidos:
    - 6500, 0.5, Decimal("12.250")
    - "1,200.25", "  3 ", "RWF 4,000"
    Cualquier valor no numérico (o NaN/Infinity) devuelve el fallback.
    """
    if raw is None or isinstance(raw, bool):
        return fallback
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else fallback
    if isinstance(raw, int):
        return Decimal(raw)
    if isinstance(raw, float):
        return Decimal(repr(raw)) if math.isfinite(raw) else fallback

    cleaned = re.sub(r'[^\d.\-]', '', normalize_number_string(raw))
    if not cleaned:
        return fallback
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return fallback
    return value if value.is_finite() else fallback


def round_money(value: Decimal) -> Decimal:
    """Redondeo a unidad entera (half-up), usado al persistir montos"""
    return Decimal(value).quantize(ONE, rounding=ROUND_HALF_UP)


def quantize_quantity(value: Decimal, places: int = 3) -> Decimal:
    """Cantidades con máximo `places` decimales"""
    exponent = Decimal(1).scaleb(-places)
    return Decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def format_qty(value: Any, max_fraction_digits: int = 3) -> str:
    """
    Formatea cantidades: separador de miles y hasta 3 decimales,
    sin ceros a la derecha. 1200.500 -> "1,200.5"
    """
    number = quantize_quantity(parse_amount(value), max_fraction_digits)
    text = f"{number:,.{max_fraction_digits}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


def format_money(value: Any) -> str:
    """Monto entero con separador de miles"""
    return f"{round_money(parse_amount(value)):,.0f}"


def is_valid_ymd(value: Any) -> bool:
    """Valida formato YYYY-MM-DD (y que sea una fecha real)"""
    text = str(value or "").strip()
    if not _YMD_PATTERN.match(text):
        return False
    try:
        date.fromisoformat(text)
    except ValueError:
        return False
    return True


def parse_ymd(value: Any) -> Optional[date]:
    """Primeros 10 caracteres YYYY-MM-DD de una fecha/datetime/ISO, o None"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    head = str(value).strip()[:10]
    return date.fromisoformat(head) if is_valid_ymd(head) else None


def today_in(timezone_name: str) -> date:
    """Fecha calendario en la zona horaria de la tienda"""
    return datetime.now(ZoneInfo(timezone_name)).date()


def to_json_number(value: Any):
    """Decimal -> int si es entero, float si tiene decimales (para payloads JSON)"""
    number = parse_amount(value)
    if number == number.to_integral_value():
        return int(number)
    return float(number)
