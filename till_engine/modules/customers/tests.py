"""
Tests para el directorio de clientes (listado y creación en dos fases)
"""

import asyncio

import pytest

from till_engine.common.exceptions import TransportError, ValidationError
from till_engine.common.requests import RequestCoordinator
from till_engine.conftest import SHOP_ID
from till_engine.modules.customers.schemas import Customer
from till_engine.modules.customers.service import CustomerDirectory


@pytest.fixture
def directory(backend_client):
    return CustomerDirectory(backend_client, RequestCoordinator(), SHOP_ID)


class TestCustomerSchema:
    def test_legacy_field_names(self):
        customer = Customer.model_validate({"id": 3, "customer_name": " Jane ", "customer_phone": None})
        assert customer.name == "Jane"
        assert customer.phone == ""


class TestCustomerDirectory:
    @pytest.mark.anyio
    async def test_refresh_filters_by_shop(self, directory, fake_backend):
        fake_backend.customers = [
            {"id": 1, "shop_id": SHOP_ID, "name": "Jane", "phone": "0788"},
            {"id": 2, "shop_id": 99, "name": "Other shop", "phone": ""},
        ]
        customers = await directory.refresh()
        assert [c.name for c in customers] == ["Jane"]
        assert directory.find(1).phone == "0788"

    @pytest.mark.anyio
    async def test_create_replaces_placeholder_with_server_list(self, directory, fake_backend):
        created = await directory.create("Eric", "0722")

        assert created.id == 1
        assert [c.name for c in directory.customers] == ["Eric"]
        assert not directory.collection.has_pending

    @pytest.mark.anyio
    async def test_placeholder_visible_while_creating(self, backend_client):
        release = asyncio.Event()

        class SlowClient:
            async def create_customer(self, shop_id, name, phone):
                await release.wait()
                return await backend_client.create_customer(shop_id, name, phone)

            async def list_customers(self, shop_id):
                return await backend_client.list_customers(shop_id)

        directory = CustomerDirectory(SlowClient(), RequestCoordinator(), SHOP_ID)
        pending = asyncio.ensure_future(directory.create("Eric", "0722"))
        await asyncio.sleep(0)

        assert [(c.name, c.pending) for c in directory.customers] == [("Eric", True)]

        release.set()
        await pending
        assert [(c.name, c.pending) for c in directory.customers] == [("Eric", False)]

    @pytest.mark.anyio
    async def test_failed_create_drops_placeholder(self, directory, fake_backend):
        fake_backend.failing.add("create_customer")
        with pytest.raises(TransportError):
            await directory.create("Eric")
        assert directory.customers == []

    @pytest.mark.anyio
    async def test_name_required(self, directory):
        with pytest.raises(ValidationError):
            await directory.create("  ")
