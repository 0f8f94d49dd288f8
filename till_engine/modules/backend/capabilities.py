"""
Optional backend features detected from /openapi.json

BackendCapabilities is built once per Till and injected into the sale
submission flow. Detection failure is not an error: the absent value keeps
payloads in the engine's own vocabulary, omits the due date and sends the
sale date as `sale_date` in date-time format.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from till_engine.common.exceptions import TransportError
from till_engine.core.config import settings
from till_engine.modules.sales.schemas import PaymentMode

logger = logging.getLogger(__name__)

DUE_DATE_CANDIDATES = ("due_date", "credit_due_date", "customer_due_date")
SALE_DATE_CANDIDATES = (
    "sale_date", "date", "sale_day", "day",
    "sold_date", "sold_on", "sale_datetime", "sold_at",
)


class BackendCapabilities(BaseModel):
    due_date_key: Optional[str] = Field(None, description="Field name for a credit due date")
    payment_enum: List[str] = Field(default_factory=list, description="Accepted payment_type values")
    payment_map: Dict[PaymentMode, str] = Field(default_factory=dict)
    sale_date_key: str = "sale_date"
    sale_date_format: str = "date-time"

    model_config = {"frozen": True}

    @classmethod
    def absent(cls) -> "BackendCapabilities":
        return cls()

    def backend_payment_type(self, mode: PaymentMode) -> str:
        return self.payment_map.get(mode, mode.value)

    def internal_payment_mode(self, raw: Optional[str]) -> Optional[PaymentMode]:
        """Map a stored payment_type back to cash/card/mobile (substring match)"""
        value = str(raw or "").strip().lower()
        if not value:
            return None
        for mode, backend_value in self.payment_map.items():
            if value == backend_value:
                return mode
        if "cash" in value:
            return PaymentMode.CASH
        if "mobile" in value or "momo" in value:
            return PaymentMode.MOBILE
        if "card" in value or "pos" in value:
            return PaymentMode.CARD
        return None


def resolve_schema(openapi: dict, schema: Any) -> dict:
    """Follow local $ref pointers and take the first object branch of anyOf/oneOf/allOf"""
    seen = set()
    while isinstance(schema, dict):
        ref = schema.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/") and ref not in seen:
            seen.add(ref)
            node: Any = openapi
            for part in ref[2:].split("/"):
                node = node.get(part, {}) if isinstance(node, dict) else {}
            schema = node
            continue
        for combinator in ("anyOf", "oneOf", "allOf"):
            branches = schema.get(combinator)
            if isinstance(branches, list):
                usable = [b for b in branches if not (isinstance(b, dict) and b.get("type") == "null")]
                if usable:
                    schema = usable[0]
                    break
        else:
            return schema
    return {}


def _sale_request_schema(openapi: dict) -> dict:
    paths = openapi.get("paths") or {}
    operation = (paths.get("/sales/") or paths.get("/sales") or {}).get("post") or {}
    content = (operation.get("requestBody") or {}).get("content") or {}
    media = content.get("application/json") or next(iter(content.values()), {})
    return resolve_schema(openapi, media.get("schema") or {})


def detect_capabilities(openapi: dict) -> BackendCapabilities:
    """Read the POST /sales/ request schema of an OpenAPI document"""
    schema = _sale_request_schema(openapi)
    properties = schema.get("properties") or {}
    if not properties:
        return BackendCapabilities.absent()

    due_date_key = next((key for key in DUE_DATE_CANDIDATES if key in properties), None)

    payment_enum: List[str] = []
    if "payment_type" in properties:
        payment_schema = resolve_schema(openapi, properties["payment_type"])
        payment_enum = [str(v).lower() for v in payment_schema.get("enum") or []]

    payment_map: Dict[PaymentMode, str] = {}
    if "pos" in payment_enum:
        payment_map[PaymentMode.CARD] = "pos"
    if "momo" in payment_enum:
        payment_map[PaymentMode.MOBILE] = "momo"

    sale_date_key = next((key for key in SALE_DATE_CANDIDATES if key in properties), "sale_date")
    sale_date_format = "date-time"
    if sale_date_key in properties:
        date_schema = resolve_schema(openapi, properties[sale_date_key])
        if date_schema.get("format") == "date":
            sale_date_format = "date"

    return BackendCapabilities(
        due_date_key=due_date_key,
        payment_enum=payment_enum,
        payment_map=payment_map,
        sale_date_key=sale_date_key,
        sale_date_format=sale_date_format,
    )


class CapabilityProbe:
    """One-shot detection; later calls return the cached result"""

    def __init__(
        self,
        client,
        attempts: int = settings.CAPABILITY_PROBE_ATTEMPTS,
        backoff: float = settings.CAPABILITY_PROBE_BACKOFF_SECONDS,
    ):
        self.client = client
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self._capabilities: Optional[BackendCapabilities] = None

    @property
    def capabilities(self) -> BackendCapabilities:
        return self._capabilities or BackendCapabilities.absent()

    async def detect(self) -> BackendCapabilities:
        if self._capabilities is not None:
            return self._capabilities

        for attempt in range(1, self.attempts + 1):
            try:
                openapi = await self.client.get_openapi()
            except TransportError as e:
                logger.warning(f"Capability probe attempt {attempt}/{self.attempts} failed: {e.detail}")
                # Connection failures were already retried by the transport
                if e.status_code is None:
                    break
                if attempt < self.attempts:
                    await asyncio.sleep(self.backoff * 2 ** (attempt - 1))
                continue
            detected = detect_capabilities(openapi)
            logger.info(
                f"Backend capabilities: due_date={detected.due_date_key}, "
                f"payment_enum={detected.payment_enum}, "
                f"sale_date={detected.sale_date_key}/{detected.sale_date_format}"
            )
            self._capabilities = detected
            return self._capabilities

        logger.warning("Capability probe failed; continuing without optional backend features")
        self._capabilities = BackendCapabilities.absent()
        return self._capabilities
