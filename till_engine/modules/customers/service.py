"""
Customer directory for credit sales

Only list and create are supported. Creation is two-phase: a pending
placeholder is shown at once, then the whole list is replaced by the
server's list (or the placeholder is dropped when the create fails).
"""

import logging
from typing import List, Optional

from till_engine.common.exceptions import TransportError, ValidationError
from till_engine.common.optimistic import OptimisticCollection
from till_engine.common.requests import RequestCoordinator
from till_engine.modules.customers.schemas import Customer

logger = logging.getLogger(__name__)


class CustomerDirectory:
    def __init__(self, client, coordinator: RequestCoordinator, shop_id: int):
        self.client = client
        self.coordinator = coordinator
        self.shop_id = shop_id
        self.collection: OptimisticCollection[Customer] = OptimisticCollection()

    @property
    def resource(self) -> str:
        return f"customers:{self.shop_id}"

    @property
    def customers(self) -> List[Customer]:
        return self.collection.items

    async def refresh(self) -> List[Customer]:
        customers = await self.coordinator.run(self.resource, lambda: self.client.list_customers(self.shop_id))
        self.collection.replace_all(customers)
        logger.debug(f"Loaded {len(customers)} customers for shop {self.shop_id}")
        return self.customers

    async def create(self, name: str, phone: str = "") -> Customer:
        name = (name or "").strip()
        phone = (phone or "").strip()
        if not name:
            raise ValidationError("Customer name is required.")

        token = self.collection.add_placeholder(
            Customer(shop_id=self.shop_id, name=name, phone=phone, pending=True)
        )
        try:
            created = await self.client.create_customer(self.shop_id, name, phone)
        except Exception:
            self.collection.discard_placeholder(token)
            raise

        logger.info(f"Customer created for shop {self.shop_id}: {created.name}")
        # Placeholder stays until the authoritative list replaces it
        try:
            customers = await self.client.list_customers(self.shop_id)
        except TransportError as e:
            logger.warning(f"Customer list reload failed after create: {e.detail}")
            customers = [c for c in self.collection.items if not c.pending] + [created]
        self.coordinator.invalidate(self.resource)
        self.collection.replace_all(customers)
        return created

    def find(self, customer_id: Optional[int]) -> Optional[Customer]:
        if customer_id is None:
            return None
        return next((c for c in self.collection.items if c.id == customer_id), None)
