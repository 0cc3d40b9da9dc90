"""
Takealot marketplace adapter.

Uses a simplified view of the Takealot Seller API: one API key header,
one offer endpoint per SKU that reports the buy box winner and the
competing offers, and a PATCH to change the selling price.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any

from buybox_repricer.core.models import (
    MonitoringResult, PriceUpdateResult, to_minor_units, from_minor_units
)
from buybox_repricer.marketplaces.base import MarketplaceAdapter
from buybox_repricer.utils.exceptions import AuthenticationError, PermanentUpstreamError
from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass
class TakealotCredentials:
    """Takealot Seller API credentials."""
    api_key: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TakealotCredentials":
        api_key = (payload or {}).get("api_key")
        if not api_key:
            raise AuthenticationError("Takealot credentials missing api_key", marketplace_id="takealot")
        return cls(api_key=api_key)


class TakealotAdapter(MarketplaceAdapter):
    """Takealot marketplace integration (single variant, exact id ``takealot``)."""

    BASE_URL = "https://seller-api.takealot.com/v2"

    def __init__(self, http_client, marketplace_id: str = "takealot", region=None):
        super().__init__(http_client, marketplace_id, region)
        self._headers: Dict[str, str] = {}

    @property
    def marketplace_name(self) -> str:
        return "takealot"

    async def initialize(self, credentials: Dict[str, Any]) -> None:
        creds = TakealotCredentials.from_payload(credentials)
        self._headers = {"Authorization": f"Key {creds.api_key}", "Accept": "application/json"}

        # Any authenticated endpoint proves the key; the seller profile is cheapest
        await self._request("GET", f"{self.BASE_URL}/seller", headers=self._headers)

        self.initialized = True
        logger.info("Initialized Takealot adapter")

    async def get_buybox_status(self, sku: str) -> MonitoringResult:
        response = await self._request(
            "GET", f"{self.BASE_URL}/offers/by_sku/{sku}/buybox", headers=self._headers
        )
        data = response.json()

        offers = data.get("offers", [])
        own_price = data.get("selling_price")
        buybox_winner = bool(data.get("buybox_winner", False))
        buybox_price = data.get("buybox_price")

        competitor_prices = [
            to_minor_units(offer["price"])
            for offer in offers
            if not offer.get("is_own_offer") and offer.get("price") is not None
        ]

        return MonitoringResult(
            sku=sku,
            marketplace_id=self.marketplace_id,
            buybox_owned=buybox_winner,
            buybox_price=to_minor_units(buybox_price) if buybox_price is not None else None,
            competitor_prices=tuple(competitor_prices),
            own_price=to_minor_units(own_price) if own_price is not None else None,
            checked_at=datetime.now(timezone.utc),
        )

    async def update_price(self, sku: str, new_price: int) -> PriceUpdateResult:
        try:
            response = await self._request(
                "PATCH",
                f"{self.BASE_URL}/offers/by_sku/{sku}",
                headers=self._headers,
                json={"selling_price": str(from_minor_units(new_price))},
            )
        except PermanentUpstreamError as e:
            logger.warning(f"Takealot rejected price {new_price} for {sku}: {e}")
            return PriceUpdateResult(success=False, message=e.message)

        data = response.json() if response.content else {}
        return PriceUpdateResult(success=True, message=data.get("message"))
