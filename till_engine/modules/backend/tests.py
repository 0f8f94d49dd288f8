"""
Tests para el cliente HTTP y el probe de capacidades

Usan el backend FastAPI falso de conftest.py (httpx.ASGITransport).
"""

from datetime import date

import httpx
import pytest

from till_engine.common.exceptions import ConflictAtCommit, TransportError
from till_engine.conftest import SHOP_ID, TODAY
from till_engine.modules.backend.capabilities import (
    BackendCapabilities, CapabilityProbe, detect_capabilities, resolve_schema,
)
from till_engine.modules.backend.client import BackendClient, flatten_error_detail
from till_engine.modules.reconciliation.schemas import ClosureSnapshot
from till_engine.modules.sales.schemas import PaymentMode


# ===== ERROR FLATTENING =====

class TestFlattenErrorDetail:
    def test_field_messages_are_joined(self):
        payload = {"detail": [{"msg": "Field required"}, {"msg": "Input should be a valid integer"}]}
        assert flatten_error_detail(payload) == "Field required | Input should be a valid integer"

    def test_string_detail(self):
        assert flatten_error_detail({"detail": "Sale not found"}) == "Sale not found"

    def test_other_detail_is_json(self):
        assert flatten_error_detail({"detail": {"code": 7}}) == '{"code": 7}'

    def test_no_detail(self):
        assert flatten_error_detail({"error": "x"}) is None
        assert flatten_error_detail(None) is None


# ===== CLIENT =====

class TestBackendClient:
    @pytest.mark.anyio
    async def test_stock_rows(self, backend_client, fake_backend):
        fake_backend.add_stock(1, "Rice", "12.5", sku="R-1")
        rows = await backend_client.list_stock(SHOP_ID)
        assert rows[0].item_name == "Rice"
        assert str(rows[0].remaining_pieces) == "12.5"

    @pytest.mark.anyio
    async def test_non_success_becomes_transport_error(self, backend_client, fake_backend):
        fake_backend.failing.add("system_totals")
        with pytest.raises(TransportError) as exc:
            await backend_client.get_system_totals(SHOP_ID, TODAY)
        assert exc.value.status_code == 500
        assert exc.value.detail == "system_totals unavailable"

    @pytest.mark.anyio
    async def test_validation_errors_are_flattened(self, backend_client):
        with pytest.raises(TransportError) as exc:
            await backend_client.create_sale({"shop_id": SHOP_ID})
        assert exc.value.status_code == 422
        assert "Field required" in exc.value.detail

    @pytest.mark.anyio
    async def test_conflict_on_commit(self, backend_client, fake_backend):
        fake_backend.conflict_on_commit = True
        payload = {"shop_id": SHOP_ID, "lines": [{"item_id": 1, "quantity_pieces": 1, "sale_price_per_piece": 10}]}
        with pytest.raises(ConflictAtCommit) as exc:
            await backend_client.create_sale(payload)
        assert exc.value.detail == "Stock changed, not enough pieces"

    @pytest.mark.anyio
    async def test_get_sale_unwraps_envelope(self, backend_client):
        created = await backend_client.create_sale({
            "shop_id": SHOP_ID,
            "payment_type": "momo",
            "lines": [{"item_id": 1, "quantity_pieces": 1.5, "sale_price_per_piece": 1000}],
        })
        sale = await backend_client.get_sale(created["id"])
        assert sale.id == created["id"]
        assert sale.payment_type == "momo"
        assert str(sale.lines[0].quantity) == "1.5"

    @pytest.mark.anyio
    async def test_missing_closure_is_none(self, backend_client):
        assert await backend_client.get_closure(SHOP_ID, TODAY) is None

    @pytest.mark.anyio
    async def test_closure_with_only_amounts(self, backend_client, fake_backend):
        fake_backend.closures[TODAY.isoformat()] = {"cash_amount": 5000, "pos_amount": 0, "momo_amount": 0}
        closure = await backend_client.get_closure(SHOP_ID, TODAY)
        assert closure.shop_id == SHOP_ID
        assert closure.closure_date == TODAY
        assert closure.cash_amount == 5000

    @pytest.mark.anyio
    async def test_wrong_shape_becomes_transport_error(self, backend_client, fake_backend):
        fake_backend.closures[TODAY.isoformat()] = {"closure_date": "yesterday"}
        with pytest.raises(TransportError) as exc:
            await backend_client.get_closure(SHOP_ID, TODAY)
        assert exc.value.detail.startswith("Unexpected response from /daily-closures/")

        fake_backend.stock_rows = [{"item_name": "Rice", "remaining_pieces": 3}]
        with pytest.raises(TransportError):
            await backend_client.list_stock(SHOP_ID)

    @pytest.mark.anyio
    async def test_stock_body_that_is_not_a_list(self, test_settings):
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"items": "none"})),
            base_url="http://testserver",
        )
        with pytest.raises(TransportError) as exc:
            await BackendClient(test_settings, http=http).list_stock(SHOP_ID)
        assert exc.value.detail == "Unexpected response from /stock/."
        await http.aclose()

    @pytest.mark.anyio
    async def test_closure_upsert(self, backend_client):
        closure = ClosureSnapshot(shop_id=SHOP_ID, closure_date=TODAY, cash_amount="1000.6", pos_amount=0, momo_amount=5)
        saved = await backend_client.save_closure(closure)
        assert saved.cash_amount == 1001

        again = await backend_client.save_closure(closure.model_copy(update={"cash_amount": 2000}))
        loaded = await backend_client.get_closure(SHOP_ID, TODAY)
        assert again.cash_amount == loaded.cash_amount == 2000

    @pytest.mark.anyio
    async def test_customer_create_falls_back_to_legacy_fields(self, backend_client, fake_backend):
        fake_backend.legacy_customer_fields = True
        customer = await backend_client.create_customer(SHOP_ID, "Jane", "0788")
        assert customer.name == "Jane"
        assert fake_backend.calls["create_customer"] == 2

    @pytest.mark.anyio
    async def test_customer_create_server_error_is_not_retried(self, backend_client, fake_backend):
        fake_backend.failing.add("create_customer")
        with pytest.raises(TransportError) as exc:
            await backend_client.create_customer(SHOP_ID, "Jane", "0788")
        assert exc.value.status_code == 500
        assert fake_backend.calls["create_customer"] == 1

    @pytest.mark.anyio
    async def test_network_error(self, test_settings):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://testserver")
        client = BackendClient(test_settings, http=http)
        with pytest.raises(TransportError) as exc:
            await client.list_stock(SHOP_ID)
        assert exc.value.detail.startswith("Network error: cannot reach API at http://testserver")
        await http.aclose()


# ===== CAPABILITIES =====

class TestDetectCapabilities:
    @pytest.mark.anyio
    async def test_fastapi_schema(self, backend_client):
        capabilities = detect_capabilities(await backend_client.get_openapi())

        assert capabilities.due_date_key == "due_date"
        assert capabilities.payment_enum == ["cash", "pos", "momo"]
        assert capabilities.backend_payment_type(PaymentMode.CARD) == "pos"
        assert capabilities.backend_payment_type(PaymentMode.MOBILE) == "momo"
        assert capabilities.backend_payment_type(PaymentMode.CASH) == "cash"
        assert capabilities.sale_date_key == "sale_date"
        assert capabilities.sale_date_format == "date-time"

    def test_date_only_sale_day_and_legacy_due_date(self):
        openapi = {
            "paths": {"/sales/": {"post": {"requestBody": {"content": {"application/json": {
                "schema": {"$ref": "#/components/schemas/Sale"},
            }}}}}},
            "components": {"schemas": {"Sale": {"properties": {
                "sale_day": {"type": "string", "format": "date"},
                "credit_due_date": {"anyOf": [{"type": "string", "format": "date"}, {"type": "null"}]},
                "payment_type": {"type": "string", "enum": ["cash", "card", "mobile"]},
            }}}},
        }
        capabilities = detect_capabilities(openapi)
        assert capabilities.sale_date_key == "sale_day"
        assert capabilities.sale_date_format == "date"
        assert capabilities.due_date_key == "credit_due_date"
        assert capabilities.payment_map == {}

    def test_empty_document_means_absent(self):
        assert detect_capabilities({}) == BackendCapabilities.absent()

    def test_resolve_schema_follows_refs_and_any_of(self):
        openapi = {"components": {"schemas": {"P": {"enum": ["pos"]}}}}
        schema = {"anyOf": [{"type": "null"}, {"$ref": "#/components/schemas/P"}]}
        assert resolve_schema(openapi, schema) == {"enum": ["pos"]}


class TestBackendCapabilities:
    def test_internal_payment_mode(self):
        capabilities = BackendCapabilities(payment_map={PaymentMode.CARD: "pos", PaymentMode.MOBILE: "momo"})
        assert capabilities.internal_payment_mode("pos") == PaymentMode.CARD
        assert capabilities.internal_payment_mode("MoMo") == PaymentMode.MOBILE
        assert capabilities.internal_payment_mode("cash") == PaymentMode.CASH
        assert capabilities.internal_payment_mode("card_visa") == PaymentMode.CARD
        assert capabilities.internal_payment_mode(None) is None
        assert capabilities.internal_payment_mode("voucher") is None

    def test_absent_is_identity(self):
        absent = BackendCapabilities.absent()
        assert absent.due_date_key is None
        assert absent.backend_payment_type(PaymentMode.MOBILE) == "mobile"


class TestCapabilityProbe:
    @pytest.mark.anyio
    async def test_detects_once(self, backend_client, fake_backend):
        probe = CapabilityProbe(backend_client, attempts=2)
        first = await probe.detect()
        second = await probe.detect()
        assert first is second
        assert first.payment_map[PaymentMode.CARD] == "pos"

    @pytest.mark.anyio
    async def test_failure_degrades_to_absent(self, test_settings):
        calls = []

        def broken(request):
            calls.append(request.url.path)
            return httpx.Response(503, json={"detail": "down"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(broken), base_url="http://testserver")
        probe = CapabilityProbe(BackendClient(test_settings, http=http), attempts=2, backoff=0)

        capabilities = await probe.detect()
        assert capabilities == BackendCapabilities.absent()
        assert calls == ["/openapi.json", "/openapi.json"]
        await http.aclose()

    @pytest.mark.anyio
    async def test_unreachable_backend_is_tried_once(self, test_settings):
        calls = []

        def refuse(request):
            calls.append(request.url.path)
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://testserver")
        probe = CapabilityProbe(BackendClient(test_settings, http=http), attempts=3, backoff=0)

        assert await probe.detect() == BackendCapabilities.absent()
        assert calls == ["/openapi.json"]
        await http.aclose()

    def test_owned_client_retries_connection_failures(self, test_settings, monkeypatch):
        seen = {}
        real_transport = httpx.AsyncHTTPTransport

        def transport(**kwargs):
            seen.update(kwargs)
            return real_transport(**kwargs)

        monkeypatch.setattr(httpx, "AsyncHTTPTransport", transport)
        BackendClient(test_settings.model_copy(update={"API_CONNECT_RETRIES": 4}))
        assert seen["retries"] == 4
