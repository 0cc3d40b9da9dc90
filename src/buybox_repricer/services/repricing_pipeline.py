"""
Per-listing repricing pipeline.

Each listing goes through the same strictly sequential steps:

    1. Skip if the connection's credentials were rejected earlier this tick
    2. Check buy box status (transient failures retried with backoff)
    3. Make sure the organization can pay for the check
    4. Evaluate rules; if an action is needed make sure it can pay for both
    5. Charge the check, push the price (same retry policy)
    6. Charge the reprice once the push succeeded, save the listing

The outcome of every listing is exactly one RepricingAction. Failures never
leak out of ``process``: anything unexpected becomes a ``failed`` action
carrying whatever was already charged.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional

from buybox_repricer.buybox.history import BuyBoxHistoryTracker
from buybox_repricer.buybox.monitor import BuyBoxMonitor
from buybox_repricer.core.models import (
    MarketplaceConnection, TrackedListing, RepricingRule, RepricingAction,
    ActionOutcome, MonitoringResult, NoActionNeeded, utcnow
)
from buybox_repricer.core.rule_engine import evaluate
from buybox_repricer.monitoring.prometheus_metrics import RepricerMetrics
from buybox_repricer.services.credits import CreditMeter, MONITORING, REPRICING
from buybox_repricer.services.repository import RepricingStore
from buybox_repricer.utils.exceptions import (
    AuthenticationError, MonitorError, CreditLedgerError, RepricerError
)
from buybox_repricer.utils.logger import get_logger, tick_logger
from buybox_repricer.utils.retry import RetryConfig, RetryableOperation


logger = get_logger(__name__)


class ConnectionBreaker:
    """
    Per-tick circuit breaker for one marketplace connection.

    Tripped when the marketplace rejects the connection's credentials. Every
    listing under a tripped connection is skipped for the rest of the tick and
    the connection is marked ``error`` exactly once. The rejected adapter is
    evicted from the adapter cache so the next tick re-initializes it.
    """

    def __init__(self, connection: MarketplaceConnection, store: RepricingStore,
                 adapter_factory=None):
        self.connection = connection
        self.store = store
        self.adapter_factory = adapter_factory
        self.tripped = False
        self.reason: Optional[str] = None
        self._lock = asyncio.Lock()

    async def trip(self, error: BaseException) -> None:
        async with self._lock:
            if self.tripped:
                return
            self.tripped = True
            self.reason = str(error)
            logger.error(
                f"Authentication failed for connection {self.connection.id} "
                f"({self.connection.marketplace_id}, org {self.connection.organization_id}); "
                f"skipping its listings: {error}"
            )
            if self.adapter_factory is not None:
                self.adapter_factory.evict_adapter(
                    self.connection.marketplace_id, self.connection.credentials,
                    self.connection.credential_version
                )
            await self.store.mark_connection_error(self.connection.id, self.reason)


@dataclass
class ListingResult:
    """What happened to one listing."""
    action: RepricingAction
    checked: bool = False


class _Progress:
    """Mutable scratchpad for one listing run."""

    def __init__(self):
        self.charged = 0
        self.checked = False
        self.rule_id: Optional[str] = None
        self.new_price: Optional[int] = None


class ListingPipeline:
    """Runs the per-listing steps against one connection's adapter."""

    def __init__(self, credit_meter: CreditMeter, store: RepricingStore,
                 retry_config: Optional[RetryConfig] = None,
                 metrics: Optional[RepricerMetrics] = None,
                 history: Optional[BuyBoxHistoryTracker] = None):
        self.credit_meter = credit_meter
        self.store = store
        self.retry_config = retry_config or RetryConfig()
        self.metrics = metrics
        self.history = history

    def _retrying(self, operation: str) -> RetryableOperation:
        def on_retry(error, attempt, delay):
            if self.metrics:
                self.metrics.track_retry(operation)

        return RetryableOperation(self.retry_config, on_retry=on_retry)

    def _action(self, listing: TrackedListing, tick_id: str, outcome: ActionOutcome,
                progress: _Progress, error: Optional[str] = None) -> ListingResult:
        action = RepricingAction(
            listing_id=listing.id,
            organization_id=listing.organization_id,
            sku=listing.sku,
            marketplace_id=listing.marketplace_id,
            old_price=listing.current_price,
            new_price=progress.new_price,
            rule_applied=progress.rule_id,
            outcome=outcome,
            credits_charged=progress.charged,
            tick_id=tick_id,
            error=error,
        )

        tick_log = tick_logger(logger, tick_id)
        log = tick_log.warning if outcome in (ActionOutcome.FAILED, ActionOutcome.SKIPPED_AUTH_ERROR) else tick_log.info
        log(
            f"{listing.marketplace_id}/{listing.sku}: {outcome.value} "
            f"(price {listing.current_price} -> {progress.new_price}, credits {progress.charged})"
            + (f" - {error}" if error else "")
        )

        if self.metrics:
            self.metrics.track_listing(listing.marketplace_id, outcome.value)

        return ListingResult(action=action, checked=progress.checked)

    async def _charge(self, listing: TrackedListing, amount: int, reason: str,
                      tick_id: str, progress: _Progress) -> bool:
        result = await self.credit_meter.charge(
            listing.organization_id, amount, reason, tick_id, listing.id
        )
        if result.success:
            progress.charged += amount
            if self.metrics:
                self.metrics.track_credits(reason, amount)
        return result.success

    async def _save(self, listing: TrackedListing, tick_id: str) -> Optional[str]:
        """Persist engine-owned listing fields; returns an error message instead of raising."""
        try:
            await self.store.save_listing(listing)
        except Exception as e:
            tick_logger(logger, tick_id).error(f"Could not save listing {listing.id}: {e}")
            return f"listing save failed: {e}"
        return None

    def fail(self, listing: TrackedListing, tick_id: str, error: str) -> ListingResult:
        """Record a listing as failed without touching the marketplace or the ledger."""
        return self._action(listing, tick_id, ActionOutcome.FAILED, _Progress(), error=error)

    async def process(self, listing: TrackedListing, monitor: Optional[BuyBoxMonitor],
                      rules: List[RepricingRule], tick_id: str,
                      breaker: ConnectionBreaker) -> ListingResult:
        """
        Process one listing. Never raises.

        Args:
            listing: Listing to monitor and maybe reprice
            monitor: Monitor bound to the connection's adapter (None if the
                connection could not be resolved and the breaker is tripped)
            rules: The organization's rules
            tick_id: Current tick identifier (part of idempotency keys)
            breaker: The connection's circuit breaker for this tick

        Returns:
            ListingResult with the audit action
        """
        progress = _Progress()
        try:
            return await self._process(listing, monitor, rules, tick_id, breaker, progress)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            tick_logger(logger, tick_id).exception(f"Unexpected error processing listing {listing.id}: {e}")
            return self._action(listing, tick_id, ActionOutcome.FAILED, progress, error=f"unexpected: {e}")

    async def _process(self, listing: TrackedListing, monitor: Optional[BuyBoxMonitor],
                       rules: List[RepricingRule], tick_id: str,
                       breaker: ConnectionBreaker, progress: _Progress) -> ListingResult:
        if breaker.tripped:
            return self._action(listing, tick_id, ActionOutcome.SKIPPED_AUTH_ERROR, progress, error=breaker.reason)

        # 1. Buy box check
        try:
            result: MonitoringResult = await self._retrying("check_buybox_status").execute(
                monitor.check_buybox_status, listing.sku
            )
        except MonitorError as e:
            if e.is_auth_failure:
                await breaker.trip(e.cause)
                return self._action(listing, tick_id, ActionOutcome.SKIPPED_AUTH_ERROR, progress, error=str(e.cause))
            return self._action(listing, tick_id, ActionOutcome.FAILED, progress, error=str(e.cause or e))
        except asyncio.TimeoutError:
            return self._action(listing, tick_id, ActionOutcome.FAILED, progress, error="buy box check timed out")

        progress.checked = True
        if self.history is not None:
            self.history.record(result)

        meter = self.credit_meter
        org_id = listing.organization_id

        try:
            # 2. Can the organization pay for the check at all
            if not await meter.can_afford(org_id, meter.monitoring_cost):
                return self._action(listing, tick_id, ActionOutcome.SKIPPED_INSUFFICIENT_CREDITS, progress)

            # 3. Rules
            try:
                decision = evaluate(listing, result, rules)
            except RepricerError as e:
                if await self._charge(listing, meter.monitoring_cost, MONITORING, tick_id, progress):
                    await self._save(listing.with_check(result.buybox_owned, result.checked_at), tick_id)
                return self._action(listing, tick_id, ActionOutcome.FAILED, progress, error=str(e))

            if isinstance(decision, NoActionNeeded):
                progress.rule_id = decision.rule_id
                if not await self._charge(listing, meter.monitoring_cost, MONITORING, tick_id, progress):
                    return self._action(listing, tick_id, ActionOutcome.SKIPPED_INSUFFICIENT_CREDITS, progress)
                save_error = await self._save(listing.with_check(result.buybox_owned, result.checked_at), tick_id)
                return self._action(listing, tick_id, ActionOutcome.NO_ACTION, progress, error=save_error)

            progress.rule_id = decision.rule_id
            progress.new_price = decision.new_price

            # 4. Both charges must be affordable before anything is charged
            if not await meter.can_afford(org_id, meter.monitoring_cost + meter.repricing_cost):
                return self._action(listing, tick_id, ActionOutcome.SKIPPED_INSUFFICIENT_CREDITS, progress)

            if not await self._charge(listing, meter.monitoring_cost, MONITORING, tick_id, progress):
                return self._action(listing, tick_id, ActionOutcome.SKIPPED_INSUFFICIENT_CREDITS, progress)

        except CreditLedgerError as e:
            return self._action(listing, tick_id, ActionOutcome.FAILED, progress, error=str(e))

        # 5. Push the price
        adapter = monitor.adapter
        try:
            update = await self._retrying("update_price").execute(
                adapter.update_price, listing.sku, decision.new_price
            )
        except AuthenticationError as e:
            await breaker.trip(e)
            return self._action(listing, tick_id, ActionOutcome.FAILED, progress, error=str(e))
        except (RepricerError, asyncio.TimeoutError, ConnectionError) as e:
            return self._action(listing, tick_id, ActionOutcome.FAILED, progress, error=f"price update failed: {e}")

        if not update.success:
            return self._action(
                listing, tick_id, ActionOutcome.FAILED, progress,
                error=f"price update rejected: {update.message}"
            )

        # 6. The price changed: the outcome is success whatever happens from here
        try:
            if not await self._charge(listing, meter.repricing_cost, REPRICING, tick_id, progress):
                tick_logger(logger, tick_id).warning(f"Repricing charge refused for {org_id} after applying price to {listing.sku}")
        except CreditLedgerError as e:
            tick_logger(logger, tick_id).error(f"Repricing charge for {listing.id} could not be recorded: {e}")

        if self.metrics:
            self.metrics.track_reprice(listing.marketplace_id)

        save_error = await self._save(
            listing.with_reprice(decision.new_price, result.buybox_owned, utcnow()), tick_id
        )
        return self._action(listing, tick_id, ActionOutcome.SUCCESS, progress, error=save_error)
