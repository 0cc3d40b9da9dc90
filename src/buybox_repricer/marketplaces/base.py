"""
Abstract base class for marketplace adapters.

Provides the unified capability interface every marketplace integration
implements: authenticate once, check buy box status, push a price.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

import httpx

from buybox_repricer.core.models import MonitoringResult, PriceUpdateResult
from buybox_repricer.utils.exceptions import (
    TransientUpstreamError, handle_api_error
)
from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)


class MarketplaceAdapter(ABC):
    """
    Abstract marketplace adapter interface.

    Instances are shared across concurrent pipelines once initialized, so any
    state kept between calls must be guarded (see the Amazon token lock).
    """

    def __init__(self, http_client: httpx.AsyncClient, marketplace_id: str,
                 region: Optional[str] = None):
        """
        Initialize adapter.

        Args:
            http_client: Shared async HTTP client owned by the factory
            marketplace_id: Full marketplace identifier, e.g. ``amazon_uk``
            region: Regional suffix for marketplace families
        """
        self.http_client = http_client
        self.marketplace_id = marketplace_id
        self.region = region
        self.initialized = False

    @abstractmethod
    async def initialize(self, credentials: Dict[str, Any]) -> None:
        """
        Validate credentials against the marketplace.

        Raises:
            AuthenticationError: If the marketplace rejects the credentials
        """
        pass

    @abstractmethod
    async def get_buybox_status(self, sku: str) -> MonitoringResult:
        """Fetch current buy box ownership and competitor prices for a SKU."""
        pass

    @abstractmethod
    async def update_price(self, sku: str, new_price: int) -> PriceUpdateResult:
        """Push a new price (minor units) for a SKU."""
        pass

    @property
    @abstractmethod
    def marketplace_name(self) -> str:
        """Get marketplace name."""
        pass

    async def aclose(self) -> None:
        """Release adapter resources. The shared HTTP client is closed by the factory."""
        self.initialized = False

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Send a request and map failures onto the error taxonomy.

        Raises:
            AuthenticationError: 401/403
            RateLimitError: 429
            TransientUpstreamError: 5xx, timeouts and transport failures
            PermanentUpstreamError: Other 4xx
        """
        try:
            response = await self.http_client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientUpstreamError(f"Timeout calling {self.marketplace_name}: {e}", endpoint=url)
        except httpx.TransportError as e:
            raise TransientUpstreamError(f"Transport error calling {self.marketplace_name}: {e}", endpoint=url)

        if response.status_code >= 400:
            logger.debug(f"{self.marketplace_name} {method} {url} -> {response.status_code}")
            handle_api_error(response, endpoint=url, marketplace_id=self.marketplace_id)

        return response
