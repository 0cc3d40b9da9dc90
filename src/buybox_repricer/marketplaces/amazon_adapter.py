"""
Amazon marketplace adapter (Selling Partner API, simplified payloads).

Registered under the ``amazon`` prefix: ``amazon_us``, ``amazon_uk`` and so on
all resolve here, with the suffix selecting the regional endpoint and
marketplace. Access tokens come from Login with Amazon and are refreshed
under a lock because one adapter instance serves many concurrent listings.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from buybox_repricer.core.models import (
    MonitoringResult, PriceUpdateResult, to_minor_units, from_minor_units
)
from buybox_repricer.marketplaces.base import MarketplaceAdapter
from buybox_repricer.utils.exceptions import (
    AuthenticationError, PermanentUpstreamError, UnsupportedMarketplace
)
from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)


LWA_TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# region -> (SP-API endpoint, marketplace id, currency)
REGIONS: Dict[str, tuple] = {
    "us": ("https://sellingpartnerapi-na.amazon.com", "ATVPDKIKX0DER", "USD"),
    "ca": ("https://sellingpartnerapi-na.amazon.com", "A2EUQ1WTGCTBG2", "CAD"),
    "uk": ("https://sellingpartnerapi-eu.amazon.com", "A1F83G8C2ARO7P", "GBP"),
    "de": ("https://sellingpartnerapi-eu.amazon.com", "A1PA6795UKMFR9", "EUR"),
    "za": ("https://sellingpartnerapi-eu.amazon.com", "AE08WJ6YKNBMC", "ZAR"),
}

# Refresh this many seconds before the token actually expires
TOKEN_REFRESH_MARGIN = 300


@dataclass
class AmazonCredentials:
    """Login with Amazon refresh-token credentials."""
    client_id: str
    client_secret: str
    refresh_token: str
    seller_id: str

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], marketplace_id: str) -> "AmazonCredentials":
        payload = payload or {}
        missing = [
            name for name in ("client_id", "client_secret", "refresh_token", "seller_id")
            if not payload.get(name)
        ]
        if missing:
            raise AuthenticationError(
                f"Amazon credentials missing: {', '.join(missing)}",
                marketplace_id=marketplace_id
            )
        return cls(
            client_id=payload["client_id"],
            client_secret=payload["client_secret"],
            refresh_token=payload["refresh_token"],
            seller_id=payload["seller_id"],
        )


class AmazonAdapter(MarketplaceAdapter):
    """Amazon marketplace family integration."""

    def __init__(self, http_client, marketplace_id: str, region: Optional[str] = None):
        region = (region or "us").lower()
        if region not in REGIONS:
            raise UnsupportedMarketplace(marketplace_id)

        super().__init__(http_client, marketplace_id, region)
        self.endpoint, self.amazon_marketplace_id, self.currency = REGIONS[region]

        self._credentials: Optional[AmazonCredentials] = None
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def marketplace_name(self) -> str:
        return "amazon"

    async def initialize(self, credentials: Dict[str, Any]) -> None:
        self._credentials = AmazonCredentials.from_payload(credentials, self.marketplace_id)
        await self._refresh_token()
        self.initialized = True
        logger.info(f"Initialized Amazon adapter for region {self.region}")

    async def _refresh_token(self) -> None:
        try:
            response = await self._request(
                "POST",
                LWA_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": self._credentials.refresh_token,
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                },
            )
        except PermanentUpstreamError as e:
            # LWA answers invalid_grant / invalid_client with a 400
            raise AuthenticationError(
                "Login with Amazon rejected the refresh token",
                marketplace_id=self.marketplace_id,
                details={"status_code": e.status_code}
            )

        data = response.json()
        self._access_token = data["access_token"]
        self._token_expires_at = time.monotonic() + float(data.get("expires_in", 3600))
        logger.debug(f"Amazon access token refreshed for {self.marketplace_id}")

    def _token_is_fresh(self) -> bool:
        return (
            self._access_token is not None
            and time.monotonic() < self._token_expires_at - TOKEN_REFRESH_MARGIN
        )

    async def _auth_headers(self) -> Dict[str, str]:
        if not self._token_is_fresh():
            async with self._token_lock:
                # Another pipeline may have refreshed while we waited
                if not self._token_is_fresh():
                    await self._refresh_token()
        return {"x-amz-access-token": self._access_token, "Accept": "application/json"}

    async def get_buybox_status(self, sku: str) -> MonitoringResult:
        headers = await self._auth_headers()
        response = await self._request(
            "GET",
            f"{self.endpoint}/products/pricing/v0/listings/{sku}/offers",
            headers=headers,
            params={"MarketplaceId": self.amazon_marketplace_id, "ItemCondition": "New"},
        )
        offers = response.json().get("payload", {}).get("Offers", [])

        seller_id = self._credentials.seller_id
        buybox_owned = False
        buybox_price = None
        own_price = None
        competitor_prices = []

        for offer in offers:
            amount = offer.get("ListingPrice", {}).get("Amount")
            if amount is None:
                continue
            price = to_minor_units(amount)
            is_own = offer.get("SellerId") == seller_id

            if offer.get("IsBuyBoxWinner"):
                buybox_price = price
                buybox_owned = is_own

            if is_own:
                own_price = price
            else:
                competitor_prices.append(price)

        return MonitoringResult(
            sku=sku,
            marketplace_id=self.marketplace_id,
            buybox_owned=buybox_owned,
            buybox_price=buybox_price,
            competitor_prices=tuple(competitor_prices),
            own_price=own_price,
            checked_at=datetime.now(timezone.utc),
        )

    async def update_price(self, sku: str, new_price: int) -> PriceUpdateResult:
        headers = await self._auth_headers()
        body = {
            "productType": "PRODUCT",
            "patches": [{
                "op": "replace",
                "path": "/attributes/purchasable_offer",
                "value": [{
                    "marketplace_id": self.amazon_marketplace_id,
                    "currency": self.currency,
                    "our_price": [{"schedule": [{"value_with_tax": str(from_minor_units(new_price))}]}],
                }],
            }],
        }

        try:
            response = await self._request(
                "PATCH",
                f"{self.endpoint}/listings/2021-08-01/items/{self._credentials.seller_id}/{sku}",
                headers=headers,
                params={"marketplaceIds": self.amazon_marketplace_id},
                json=body,
            )
        except PermanentUpstreamError as e:
            logger.warning(f"Amazon rejected price {new_price} for {sku}: {e}")
            return PriceUpdateResult(success=False, message=e.message)

        data = response.json()
        if data.get("status") == "ACCEPTED":
            return PriceUpdateResult(success=True, message=data.get("submissionId"))

        issues = "; ".join(issue.get("message", "") for issue in data.get("issues", []))
        return PriceUpdateResult(success=False, message=issues or data.get("status"))
