"""
Unit tests for the per-listing repricing pipeline
"""
import asyncio

import pytest

from buybox_repricer.core.models import ActionOutcome, ConnectionStatus, PriceUpdateResult, RepricingStrategy
from buybox_repricer.services.credits import CreditLedger, CreditMeter, InMemoryCreditLedger
from buybox_repricer.services.repricing_pipeline import ConnectionBreaker, ListingPipeline
from buybox_repricer.utils.exceptions import (
    AuthenticationError, PermanentUpstreamError, TransientUpstreamError
)
from buybox_repricer.utils.retry import RetryConfig


TICK = "tick-test"


class UnreachableLedger(CreditLedger):
    """Ledger whose every call fails"""

    async def check_balance(self, organization_id, amount):
        raise ConnectionError("ledger down")

    async def charge(self, organization_id, amount, reason, idempotency_key):
        raise ConnectionError("ledger down")


@pytest.fixture
def connection(make_connection, store):
    connection = make_connection(id="conn-1")
    store.add_connection(connection)
    return connection


@pytest.fixture
def breaker(connection, store):
    return ConnectionBreaker(connection, store)


@pytest.fixture
async def monitor(monitor_factory, connection):
    return await monitor_factory.get_monitor(connection.marketplace_id, connection.credentials)


@pytest.fixture
def listing(make_listing, store):
    listing = make_listing(id="listing-1", current_price=1500)
    store.add_listing(listing)
    return listing


class TestSuccessfulRepricing:
    """Test the full happy path"""

    async def test_reprice_charges_both_and_saves(self, pipeline, monitor, listing, breaker,
                                                  make_rule, make_result, fake_marketplace,
                                                  ledger, store, metrics):
        fake_marketplace.set_buybox("SKU-1", make_result(buybox_price=1400, competitors=[1400], own_price=1500))
        rule = make_rule()

        outcome = await pipeline.process(listing, monitor, [rule], TICK, breaker)

        action = outcome.action
        assert action.outcome == ActionOutcome.SUCCESS
        assert action.old_price == 1500
        assert action.new_price == 1399
        assert action.rule_applied == rule.id
        assert action.credits_charged == 6
        assert outcome.checked is True

        assert fake_marketplace.updates == [("SKU-1", 1399)]
        assert ledger.balance_of("org-1") == 994
        assert [c["idempotency_key"] for c in ledger.charges] == [
            f"{TICK}:listing-1:monitoring", f"{TICK}:listing-1:repricing"
        ]

        saved = store.listings["listing-1"]
        assert saved.current_price == 1399
        assert saved.last_repriced_at is not None
        assert metrics.value("buybox_repricer_reprices_applied_total", {"marketplace": "fakemart"}) == 1
        assert metrics.value("buybox_repricer_credits_charged_total", {"reason": "repricing"}) == 5

    async def test_owned_buybox_charges_monitoring_only(self, pipeline, monitor, listing, breaker,
                                                       make_rule, make_result, fake_marketplace,
                                                       ledger, store):
        fake_marketplace.set_buybox("SKU-1", make_result(owned=True, buybox_price=1500, competitors=[1500]))

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.NO_ACTION
        assert outcome.action.credits_charged == 1
        assert ledger.total_charged() == 1
        assert fake_marketplace.updates == []
        assert store.listings["listing-1"].buybox_owned is True
        assert store.listings["listing-1"].last_checked_at is not None

    async def test_save_failure_after_push_keeps_success(self, pipeline, monitor, listing, breaker,
                                                         make_rule, make_result, fake_marketplace,
                                                         ledger, store):
        fake_marketplace.set_buybox("SKU-1", make_result(buybox_price=1400, competitors=[1400], own_price=1500))

        async def broken_save(listing):
            raise RuntimeError("disk full")

        store.save_listing = broken_save

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.SUCCESS
        assert outcome.action.new_price == 1399
        assert outcome.action.credits_charged == 6
        assert "disk full" in outcome.action.error
        assert fake_marketplace.updates == [("SKU-1", 1399)]
        assert ledger.total_charged() == 6

    async def test_history_records_checks(self, pipeline, monitor, listing, breaker,
                                          make_rule, make_result, fake_marketplace, history):
        fake_marketplace.set_buybox("SKU-1", make_result(owned=True, buybox_price=1500, own_price=1500))

        await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert history.get("fakemart", "SKU-1").win_percentage() == 100.0


class TestCredits:
    """Test charge ordering against the ledger"""

    async def test_broke_organization_is_skipped(self, store, fast_retry, monitor, listing, breaker,
                                                 make_rule, make_result, fake_marketplace):
        ledger = InMemoryCreditLedger({"org-1": 0})
        pipeline = ListingPipeline(CreditMeter(ledger, retry_config=fast_retry), store, retry_config=fast_retry)
        fake_marketplace.set_buybox("SKU-1", make_result(competitors=[1400]))

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.SKIPPED_INSUFFICIENT_CREDITS
        assert outcome.action.credits_charged == 0
        assert fake_marketplace.updates == []

    async def test_cannot_afford_reprice_charges_nothing(self, store, fast_retry, monitor, listing, breaker,
                                                        make_rule, make_result, fake_marketplace):
        ledger = InMemoryCreditLedger({"org-1": 3})
        pipeline = ListingPipeline(CreditMeter(ledger, retry_config=fast_retry), store, retry_config=fast_retry)
        fake_marketplace.set_buybox("SKU-1", make_result(competitors=[1400]))

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.SKIPPED_INSUFFICIENT_CREDITS
        assert outcome.action.credits_charged == 0
        assert ledger.balance_of("org-1") == 3
        assert store.listings["listing-1"].current_price == 1500

    async def test_rejected_update_charges_monitoring(self, pipeline, monitor, listing, breaker,
                                                      make_rule, make_result, fake_marketplace, ledger, store):
        fake_marketplace.set_buybox("SKU-1", make_result(competitors=[1400]))
        fake_marketplace.set_update("SKU-1", PriceUpdateResult(success=False, message="price locked"))

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.FAILED
        assert outcome.action.credits_charged == 1
        assert "price locked" in outcome.action.error
        assert ledger.total_charged() == 1
        assert store.listings["listing-1"].current_price == 1500

    async def test_update_error_charges_monitoring(self, pipeline, monitor, listing, breaker,
                                                   make_rule, make_result, fake_marketplace, ledger):
        fake_marketplace.set_buybox("SKU-1", make_result(competitors=[1400]))
        fake_marketplace.set_update("SKU-1", PermanentUpstreamError("bad request", status_code=400))

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.FAILED
        assert outcome.action.credits_charged == 1
        assert len(fake_marketplace.updates) == 1

    async def test_unreachable_ledger_fails_listing(self, store, fast_retry, monitor, listing, breaker,
                                                    make_rule, make_result, fake_marketplace):
        meter = CreditMeter(UnreachableLedger(), retry_config=fast_retry)
        pipeline = ListingPipeline(meter, store, retry_config=fast_retry)
        fake_marketplace.set_buybox("SKU-1", make_result(competitors=[1400]))

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.FAILED
        assert outcome.action.credits_charged == 0
        assert fake_marketplace.updates == []

    async def test_invalid_rule_charges_monitoring(self, pipeline, monitor, listing, breaker,
                                                   make_rule, make_result, fake_marketplace):
        fake_marketplace.set_buybox("SKU-1", make_result(buybox_price=1600))
        rule = make_rule(strategy=RepricingStrategy.BEAT_BY_AMOUNT, parameters={})

        outcome = await pipeline.process(listing, monitor, [rule], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.FAILED
        assert outcome.action.credits_charged == 1
        assert "amount" in outcome.action.error


class TestUpstreamFailures:
    """Test retries, permanent failures and the circuit breaker"""

    async def test_transient_failures_retried(self, pipeline, monitor, listing, breaker,
                                              make_rule, make_result, fake_marketplace, metrics):
        fake_marketplace.set_buybox(
            "SKU-1",
            TransientUpstreamError("timeout"),
            TransientUpstreamError("timeout"),
            make_result(competitors=[1400]),
        )

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.SUCCESS
        assert fake_marketplace.check_calls["SKU-1"] == 3
        assert metrics.value("buybox_repricer_upstream_retries_total", {"operation": "check_buybox_status"}) == 2

    async def test_backoff_waits_between_attempts(self, credit_meter, store, monitor, listing, breaker,
                                                  make_rule, make_result, fake_marketplace):
        pipeline = ListingPipeline(credit_meter, store, retry_config=RetryConfig())
        fake_marketplace.set_buybox(
            "SKU-1",
            asyncio.TimeoutError(),
            asyncio.TimeoutError(),
            make_result(competitors=[1400]),
        )
        loop = asyncio.get_running_loop()

        started = loop.time()
        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.SUCCESS
        assert loop.time() - started >= 1.5

    async def test_exhausted_retries_fail_without_charge(self, pipeline, monitor, listing, breaker,
                                                         make_rule, fake_marketplace, ledger):
        fake_marketplace.set_buybox("SKU-1", TransientUpstreamError("down"))

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.FAILED
        assert outcome.action.credits_charged == 0
        assert outcome.checked is False
        assert fake_marketplace.check_calls["SKU-1"] == 3
        assert ledger.charges == []

    async def test_permanent_failure_not_retried(self, pipeline, monitor, listing, breaker,
                                                 make_rule, fake_marketplace):
        fake_marketplace.set_buybox("SKU-1", PermanentUpstreamError("unknown sku", status_code=404))

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.FAILED
        assert fake_marketplace.check_calls["SKU-1"] == 1

    async def test_auth_failure_trips_breaker(self, pipeline, monitor, listing, breaker, make_listing,
                                              make_rule, fake_marketplace, store):
        fake_marketplace.set_buybox("SKU-1", AuthenticationError("token revoked"))
        second = make_listing(id="listing-2", sku="SKU-2")

        first_outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)
        second_outcome = await pipeline.process(second, monitor, [make_rule()], TICK, breaker)

        assert first_outcome.action.outcome == ActionOutcome.SKIPPED_AUTH_ERROR
        assert second_outcome.action.outcome == ActionOutcome.SKIPPED_AUTH_ERROR
        assert fake_marketplace.check_calls["SKU-2"] == 0
        assert breaker.tripped
        assert store.connections["conn-1"].status == ConnectionStatus.ERROR

    async def test_auth_failure_on_push_evicts_adapter(self, pipeline, listing, connection, store,
                                                       make_rule, make_result, fake_marketplace,
                                                       monitor_factory, adapter_factory):
        monitor = await monitor_factory.get_monitor(connection.marketplace_id, connection.credentials)
        breaker = ConnectionBreaker(connection, store, adapter_factory)
        fake_marketplace.set_buybox("SKU-1", make_result(buybox_price=1400, competitors=[1400], own_price=1500))
        fake_marketplace.set_update("SKU-1", AuthenticationError("token revoked"))
        assert adapter_factory.cache_size == 1

        outcome = await pipeline.process(listing, monitor, [make_rule()], TICK, breaker)

        assert outcome.action.outcome == ActionOutcome.FAILED
        assert outcome.action.credits_charged == 1
        assert breaker.tripped
        assert adapter_factory.cache_size == 0

    async def test_breaker_marks_connection_once(self, connection, store):
        calls = []
        original = store.mark_connection_error

        async def counting(connection_id, message):
            calls.append(connection_id)
            await original(connection_id, message)

        store.mark_connection_error = counting
        breaker = ConnectionBreaker(connection, store)

        await asyncio.gather(*[breaker.trip(AuthenticationError("bad")) for _ in range(5)])

        assert calls == ["conn-1"]

    async def test_fail_records_without_side_effects(self, pipeline, listing, ledger):
        outcome = pipeline.fail(listing, TICK, "Unsupported marketplace: ebay")

        assert outcome.action.outcome == ActionOutcome.FAILED
        assert outcome.action.credits_charged == 0
        assert ledger.charges == []
