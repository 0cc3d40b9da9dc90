"""
Test configuration and fixtures for the Buy Box Repricer
"""
import os

# Console logging only while testing
os.environ.setdefault("LOG_TO_FILE", "false")

import asyncio
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from buybox_repricer.buybox.history import BuyBoxHistoryTracker
from buybox_repricer.buybox.monitor import BuyBoxMonitorFactory
from buybox_repricer.core.models import (
    MarketplaceConnection, TrackedListing, RepricingRule, MonitoringResult,
    PriceUpdateResult, RuleScope, RepricingStrategy
)
from buybox_repricer.marketplaces.base import MarketplaceAdapter
from buybox_repricer.marketplaces.factory import MarketplaceAdapterFactory
from buybox_repricer.monitoring.prometheus_metrics import RepricerMetrics
from buybox_repricer.services.credits import CreditMeter, InMemoryCreditLedger
from buybox_repricer.services.repository import InMemoryRepricingStore
from buybox_repricer.services.repricing_pipeline import ListingPipeline
from buybox_repricer.services.scheduler import RepricingScheduler
from buybox_repricer.utils.retry import RetryConfig


ORG_ID = "org-1"
FAKE_MARKETPLACE = "fakemart"
BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Scriptable marketplace
# =============================================================================

class FakeMarketplace:
    """
    Scripted marketplace behind FakeAdapter.

    Responses are queued per SKU; the last queued response repeats. A queued
    exception is raised instead of returned.
    """

    def __init__(self):
        self.buybox_responses: Dict[str, List[Any]] = {}
        self.update_responses: Dict[str, List[Any]] = {}
        self.init_error: Optional[BaseException] = None
        self.init_errors: List[BaseException] = []
        self.init_delay = 0.0
        self.check_delay = 0.0
        self.init_calls = 0
        self.check_calls: Counter = Counter()
        self.updates: List[tuple] = []

    def set_buybox(self, sku: str, *responses) -> None:
        self.buybox_responses[sku] = list(responses)

    def set_update(self, sku: str, *responses) -> None:
        self.update_responses[sku] = list(responses)

    @staticmethod
    def _next(queue: Dict[str, List[Any]], sku: str, default=None):
        responses = queue.get(sku)
        if not responses:
            return default
        value = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(value, BaseException):
            raise value
        return value

    def adapter_class(self):
        return type("BoundFakeAdapter", (FakeAdapter,), {"marketplace": self})


class FakeAdapter(MarketplaceAdapter):
    """Adapter driven by a FakeMarketplace."""

    marketplace: FakeMarketplace = None

    @property
    def marketplace_name(self) -> str:
        return "fakemart"

    async def initialize(self, credentials: Dict[str, Any]) -> None:
        self.marketplace.init_calls += 1
        if self.marketplace.init_delay:
            await asyncio.sleep(self.marketplace.init_delay)
        if self.marketplace.init_errors:
            raise self.marketplace.init_errors.pop(0)
        if self.marketplace.init_error is not None:
            raise self.marketplace.init_error
        self.credentials = credentials
        self.initialized = True

    async def get_buybox_status(self, sku: str) -> MonitoringResult:
        self.marketplace.check_calls[sku] += 1
        if self.marketplace.check_delay:
            await asyncio.sleep(self.marketplace.check_delay)
        result = self.marketplace._next(self.marketplace.buybox_responses, sku)
        if result is None:
            return MonitoringResult(sku=sku, marketplace_id=self.marketplace_id, buybox_owned=False)
        return result

    async def update_price(self, sku: str, new_price: int) -> PriceUpdateResult:
        self.marketplace.updates.append((sku, new_price))
        return self.marketplace._next(
            self.marketplace.update_responses, sku, default=PriceUpdateResult(success=True)
        )


# =============================================================================
# Record builders
# =============================================================================

def _make_listing(**overrides) -> TrackedListing:
    data = {
        "id": f"listing-{uuid.uuid4().hex[:8]}",
        "sku": "SKU-1",
        "marketplace_id": FAKE_MARKETPLACE,
        "organization_id": ORG_ID,
        "current_price": 1500,
        "min_price": 1000,
        "max_price": 2000,
    }
    data.update(overrides)
    return TrackedListing(**data)


def _make_rule(**overrides) -> RepricingRule:
    data = {
        "id": f"rule-{uuid.uuid4().hex[:8]}",
        "organization_id": ORG_ID,
        "scope": RuleScope.GLOBAL,
        "strategy": RepricingStrategy.MATCH_LOWEST,
        "parameters": {},
        "created_at": BASE_TIME,
    }
    data.update(overrides)
    return RepricingRule(**data)


def _make_connection(**overrides) -> MarketplaceConnection:
    data = {
        "id": f"conn-{uuid.uuid4().hex[:8]}",
        "organization_id": ORG_ID,
        "marketplace_id": FAKE_MARKETPLACE,
        "credentials": {"api_key": "good-key"},
    }
    data.update(overrides)
    return MarketplaceConnection(**data)


def _make_result(sku: str = "SKU-1", owned: bool = False, buybox_price: Optional[int] = None,
                 competitors=(), own_price: Optional[int] = None,
                 marketplace_id: str = FAKE_MARKETPLACE,
                 checked_at: Optional[datetime] = None) -> MonitoringResult:
    return MonitoringResult(
        sku=sku,
        marketplace_id=marketplace_id,
        buybox_owned=owned,
        buybox_price=buybox_price,
        competitor_prices=tuple(competitors),
        own_price=own_price,
        checked_at=checked_at or BASE_TIME,
    )


@pytest.fixture
def make_listing():
    """Build a valid TrackedListing with overrides"""
    return _make_listing


@pytest.fixture
def make_rule():
    """Build a global MATCH_LOWEST rule with overrides"""
    return _make_rule


@pytest.fixture
def make_connection():
    return _make_connection


@pytest.fixture
def make_result():
    """Build a MonitoringResult"""
    return _make_result


# =============================================================================
# Engine components
# =============================================================================

@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry policy without waiting"""
    return RetryConfig(max_attempts=3, base_delay=0.0, jitter=False)


@pytest.fixture
def fake_marketplace() -> FakeMarketplace:
    return FakeMarketplace()


@pytest.fixture
async def adapter_factory(fake_marketplace):
    """Adapter factory with only the fake marketplace registered"""
    client = httpx.AsyncClient()
    factory = MarketplaceAdapterFactory(http_client=client)
    factory.register(FAKE_MARKETPLACE, fake_marketplace.adapter_class())
    yield factory
    await factory.aclose()
    await client.aclose()


@pytest.fixture
def monitor_factory(adapter_factory) -> BuyBoxMonitorFactory:
    return BuyBoxMonitorFactory(adapter_factory)


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    return InMemoryCreditLedger(default_balance=1000)


@pytest.fixture
def credit_meter(ledger, fast_retry) -> CreditMeter:
    return CreditMeter(ledger, monitoring_cost=1, repricing_cost=5, retry_config=fast_retry)


@pytest.fixture
def store() -> InMemoryRepricingStore:
    return InMemoryRepricingStore()


@pytest.fixture
def metrics() -> RepricerMetrics:
    return RepricerMetrics()


@pytest.fixture
def history() -> BuyBoxHistoryTracker:
    return BuyBoxHistoryTracker()


@pytest.fixture
def pipeline(credit_meter, store, fast_retry, metrics, history) -> ListingPipeline:
    return ListingPipeline(credit_meter, store, retry_config=fast_retry, metrics=metrics, history=history)


@pytest.fixture
def scheduler(store, monitor_factory, pipeline, metrics) -> RepricingScheduler:
    return RepricingScheduler(
        store, monitor_factory, pipeline,
        tick_interval_seconds=60, worker_concurrency=3, metrics=metrics
    )
