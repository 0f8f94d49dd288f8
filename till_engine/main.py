import logging
from typing import Any, Optional

import httpx

from till_engine.common.requests import RequestCoordinator
from till_engine.core.config import Settings, settings as default_settings
from till_engine.modules.auth.permissions import Permissions
from till_engine.modules.backend.capabilities import CapabilityProbe
from till_engine.modules.backend.client import BackendClient
from till_engine.modules.customers.service import CustomerDirectory
from till_engine.modules.reconciliation.service import ReconciliationEngine
from till_engine.modules.sales.cart import SaleCart
from till_engine.modules.sales.edit_intents import EditIntentCoordinator
from till_engine.modules.sales.service import SaleSubmissionCoordinator
from till_engine.modules.stock.service import StockService


def configure_logging(settings: Settings = default_settings) -> None:
    logging.basicConfig(
        level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


logger = logging.getLogger(__name__)


class Till:
    """All engine components for one shop and one authenticated role"""

    def __init__(
        self,
        shop_id: int,
        permissions: Permissions,
        client: BackendClient,
        capabilities,
        settings: Settings = default_settings,
    ):
        self.shop_id = shop_id
        self.permissions = permissions
        self.client = client
        self.settings = settings
        self.capabilities = capabilities
        self.coordinator = RequestCoordinator()
        self.intents = EditIntentCoordinator()

        self.stock = StockService(client, self.coordinator, shop_id)
        self.customers = CustomerDirectory(client, self.coordinator, shop_id)
        self.cart = SaleCart(self.stock, settings)
        self.sales = SaleSubmissionCoordinator(
            client,
            self.cart,
            self.stock,
            self.customers,
            self.coordinator,
            permissions,
            shop_id,
            capabilities=capabilities,
            intents=self.intents,
            settings=settings,
        )
        self.reconciliation = ReconciliationEngine(client, self.coordinator, permissions, shop_id, settings)

        # Committed sales and cancelled lines move the day's expected totals
        self.sales.on_committed(self.reconciliation.notify_sales_changed)

    async def start(self) -> None:
        """Load stock, customers and today's closure, then start the periodic refresh"""
        await self.stock.refresh()
        await self.customers.refresh()
        await self.reconciliation.open()
        self.reconciliation.start_auto_refresh()
        logger.info(f"Till ready for shop {self.shop_id} ({self.permissions.role.value})")

    async def close(self) -> None:
        await self.reconciliation.stop_auto_refresh()
        await self.client.aclose()
        logger.info(f"Till closed for shop {self.shop_id}")

    async def __aenter__(self) -> "Till":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


async def create_till(
    shop_id: int,
    role: Any,
    settings: Settings = default_settings,
    client: Optional[BackendClient] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> Till:
    """
    Build a Till: permissions from the role, a backend client and the
    one-shot capability probe (absent capabilities when it fails).
    """
    logger.info(f"Creating till for shop {shop_id}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    client = client or BackendClient(settings, http=http)
    permissions = Permissions.for_role(role)
    capabilities = await CapabilityProbe(
        client, settings.CAPABILITY_PROBE_ATTEMPTS, settings.CAPABILITY_PROBE_BACKOFF_SECONDS
    ).detect()
    return Till(shop_id, permissions, client, capabilities, settings)
