"""
Prometheus metrics for the repricing engine.

Metrics exported:
- buybox_repricer_ticks_total: Ticks by final state
- buybox_repricer_ticks_skipped_total: Fires skipped by the overlap guard
- buybox_repricer_listings_total: Listings processed, by outcome
- buybox_repricer_reprices_applied_total: Successful price pushes
- buybox_repricer_credits_charged_total: Credits charged, by reason
- buybox_repricer_upstream_retries_total: Retries of marketplace calls
- buybox_repricer_tick_duration_seconds: Tick duration histogram
- buybox_repricer_adapter_cache_size: Cached marketplace adapters
"""

import logging
from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
)

logger = logging.getLogger(__name__)


class RepricerMetrics:
    """
    Prometheus metrics collector for the repricing engine.

    Each instance registers into its own registry so several schedulers
    (and tests) can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize Prometheus metrics.

        Args:
            registry: Prometheus registry (a fresh one if not provided)
        """
        self.registry = registry or CollectorRegistry()

        self.ticks_total = Counter(
            "buybox_repricer_ticks_total",
            "Total repricing ticks",
            ["state"],
            registry=self.registry,
        )

        self.ticks_skipped = Counter(
            "buybox_repricer_ticks_skipped_total",
            "Scheduled fires skipped because a tick was still running",
            registry=self.registry,
        )

        self.listings_total = Counter(
            "buybox_repricer_listings_total",
            "Listings processed",
            ["marketplace", "outcome"],
            registry=self.registry,
        )

        self.reprices_applied = Counter(
            "buybox_repricer_reprices_applied_total",
            "Price changes accepted by a marketplace",
            ["marketplace"],
            registry=self.registry,
        )

        self.credits_charged = Counter(
            "buybox_repricer_credits_charged_total",
            "Credits charged",
            ["reason"],
            registry=self.registry,
        )

        self.upstream_retries = Counter(
            "buybox_repricer_upstream_retries_total",
            "Retried marketplace calls",
            ["operation"],
            registry=self.registry,
        )

        self.tick_duration = Histogram(
            "buybox_repricer_tick_duration_seconds",
            "Repricing tick duration in seconds",
            buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0],
            registry=self.registry,
        )

        self.adapter_cache_size = Gauge(
            "buybox_repricer_adapter_cache_size",
            "Initialized marketplace adapters held in the cache",
            registry=self.registry,
        )

        logger.info("Prometheus metrics initialized")

    def track_tick(self, state: str, duration: float):
        self.ticks_total.labels(state=state).inc()
        self.tick_duration.observe(duration)

    def track_skipped_tick(self):
        self.ticks_skipped.inc()

    def track_listing(self, marketplace: str, outcome: str):
        self.listings_total.labels(marketplace=marketplace, outcome=outcome).inc()

    def track_reprice(self, marketplace: str):
        self.reprices_applied.labels(marketplace=marketplace).inc()

    def track_credits(self, reason: str, amount: int):
        if amount > 0:
            self.credits_charged.labels(reason=reason).inc(amount)

    def track_retry(self, operation: str):
        self.upstream_retries.labels(operation=operation).inc()

    def set_adapter_cache_size(self, size: int):
        self.adapter_cache_size.set(size)

    def value(self, name: str, labels: Optional[dict] = None) -> float:
        """Current sample value, mostly for tests and the CLI."""
        result = self.registry.get_sample_value(name, labels or {})
        return result if result is not None else 0.0

    def render(self) -> bytes:
        """Exposition-format output."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST
