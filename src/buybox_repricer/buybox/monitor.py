"""
Buy box monitoring capability.

``BuyBoxMonitor`` wraps an initialized adapter and hides marketplace error
shapes: whatever the adapter raises comes out as ``MonitorError`` with the
original exception attached. ``BuyBoxMonitorFactory`` resolves the monitor
class for a marketplace; the default monitor serves every adapter unless a
marketplace-specific class has been registered.
"""

import time
from dataclasses import replace
from typing import Dict, Any, List, Optional, Type

from buybox_repricer.core.models import MonitoringResult
from buybox_repricer.marketplaces.base import MarketplaceAdapter
from buybox_repricer.marketplaces.factory import MarketplaceAdapterFactory
from buybox_repricer.utils.exceptions import MonitorError, UnsupportedMarketplace
from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)


class BuyBoxMonitor:
    """Default monitor: delegates to the adapter and normalizes failures."""

    def __init__(self, adapter: MarketplaceAdapter):
        self.adapter = adapter

    @property
    def marketplace_id(self) -> str:
        return self.adapter.marketplace_id

    async def fetch(self, sku: str) -> MonitoringResult:
        """Marketplace-specific monitors override this."""
        return await self.adapter.get_buybox_status(sku)

    async def check_buybox_status(self, sku: str) -> MonitoringResult:
        """
        Check buy box ownership for a SKU.

        Raises:
            MonitorError: On any adapter failure, with the original as ``cause``
        """
        started = time.perf_counter()
        try:
            result = await self.fetch(sku)
        except MonitorError:
            raise
        except Exception as e:
            logger.warning(f"Buy box check failed for {sku} on {self.marketplace_id}: {e}")
            raise MonitorError(
                f"Buy box check failed for {sku}",
                marketplace_id=self.marketplace_id, sku=sku, cause=e
            ) from e

        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.debug(
            f"Buy box {sku}@{self.marketplace_id}: owned={result.buybox_owned} "
            f"price={result.buybox_price} competitors={len(result.competitor_prices)} "
            f"({latency_ms}ms)"
        )
        return replace(result, latency_ms=latency_ms)


class BuyBoxMonitorFactory:
    """Maps marketplace ids onto monitor classes."""

    def __init__(self, adapter_factory: MarketplaceAdapterFactory,
                 default_monitor: Type[BuyBoxMonitor] = BuyBoxMonitor):
        self.adapter_factory = adapter_factory
        self.default_monitor = default_monitor
        self._monitors: Dict[str, Type[BuyBoxMonitor]] = {}

    def register(self, marketplace_id: str, monitor_cls: Type[BuyBoxMonitor]) -> None:
        """Use a marketplace-specific monitor class for one exact id."""
        self._monitors[marketplace_id.lower()] = monitor_cls

    def is_supported(self, marketplace_id: str) -> bool:
        return self.adapter_factory.is_supported(marketplace_id)

    def list_supported(self) -> List[str]:
        return self.adapter_factory.list_supported()

    def monitor_for(self, adapter: MarketplaceAdapter) -> BuyBoxMonitor:
        """
        Wrap an already initialized adapter.

        Raises:
            UnsupportedMarketplace: If the adapter's marketplace is unknown
        """
        marketplace_id = adapter.marketplace_id
        if not self.is_supported(marketplace_id):
            raise UnsupportedMarketplace(marketplace_id)

        monitor_cls = self._monitors.get(marketplace_id.lower(), self.default_monitor)
        return monitor_cls(adapter)

    async def get_monitor(self, marketplace_id: str, credentials: Dict[str, Any],
                          credential_version: Optional[int] = None) -> BuyBoxMonitor:
        """
        Resolve an adapter through the adapter cache and wrap it.

        Raises:
            UnsupportedMarketplace: If the marketplace is unknown
            AuthenticationError: If the credentials are rejected
        """
        if not self.is_supported(marketplace_id):
            raise UnsupportedMarketplace(marketplace_id)
        adapter = await self.adapter_factory.get_adapter(marketplace_id, credentials, credential_version)
        return self.monitor_for(adapter)
