"""
End-to-end ticks through the wired application and a SQLite store
"""
import json

import httpx
import pytest

from buybox_repricer.bootstrap import build_app
from buybox_repricer.core.models import ActionOutcome, ConnectionStatus
from buybox_repricer.services.credits import InMemoryCreditLedger
from buybox_repricer.services.scheduler import TickState
from buybox_repricer.utils.config import RepricerConfig
from buybox_repricer.utils.exceptions import AuthenticationError


@pytest.fixture
def config() -> RepricerConfig:
    return RepricerConfig(
        _env_file=None,
        worker_concurrency=2,
        retry_base_delay=0.0,
        retry_jitter=False,
        call_timeout_seconds=5.0,
    )


def takealot_handler(state):
    def handle(request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") != "Key good-key":
            return httpx.Response(401, json={"message": "invalid key"})

        path = request.url.path
        if path == "/v2/seller":
            return httpx.Response(200, json={"seller_id": 42})
        if path.endswith("/buybox"):
            sku = path.split("/")[-2]
            own_price = state["prices"].get(sku, "149.99")
            return httpx.Response(200, json={
                "selling_price": own_price,
                "buybox_winner": False,
                "buybox_price": "139.50",
                "offers": [
                    {"price": own_price, "is_own_offer": True},
                    {"price": "139.50", "is_own_offer": False},
                ],
            })
        if request.method == "PATCH":
            sku = path.split("/")[-1]
            state["prices"][sku] = json.loads(request.content)["selling_price"]
            state["patches"] += 1
            return httpx.Response(200, json={"message": "updated"})
        return httpx.Response(404)
    return handle


class TestFakeMarketplaceTick:
    """Full tick with a scripted marketplace"""

    async def test_tick_persists_prices_and_actions(self, config, sql_store, adapter_factory,
                                                    fake_marketplace, make_listing, make_rule, make_result):
        ledger = InMemoryCreditLedger({"org-1": 100})
        app = build_app(config=config, store=sql_store, ledger=ledger,
                        adapter_factory=adapter_factory, init_observability=False)
        try:
            await sql_store.add_connection("org-1", "fakemart", {"api_key": "good-key"}, connection_id="c1")
            await sql_store.add_listing(make_listing(id="l1", sku="SKU-1", current_price=1500))
            await sql_store.add_listing(make_listing(id="l2", sku="SKU-2", current_price=1500))
            await sql_store.add_rule(make_rule(id="r1"))
            fake_marketplace.set_buybox("SKU-1", make_result(sku="SKU-1", buybox_price=1400, competitors=[1400]))
            fake_marketplace.set_buybox("SKU-2", make_result(sku="SKU-2", owned=True, buybox_price=1500,
                                                             competitors=[1550]))

            tick = await app.scheduler.run_once()

            assert tick.state == TickState.COMPLETED
            assert tick.outcomes == {"success": 1, "no-action": 1}

            repriced = await sql_store.get_listing("l1")
            untouched = await sql_store.get_listing("l2")
            assert repriced.current_price == 1399
            assert untouched.current_price == 1500
            assert untouched.buybox_owned is True
            assert untouched.last_checked_at is not None

            actions = await sql_store.list_actions(tick_id=tick.tick_id)
            assert {a.outcome for a in actions} == {ActionOutcome.SUCCESS, ActionOutcome.NO_ACTION}
            assert ledger.balance_of("org-1") == 93
            assert app.history.get("fakemart", "SKU-2").win_percentage() == 100.0
        finally:
            await app.aclose()

    async def test_revoked_credentials_error_the_connection(self, config, sql_store, adapter_factory,
                                                            fake_marketplace, make_listing, make_rule):
        fake_marketplace.init_error = AuthenticationError("key revoked")
        ledger = InMemoryCreditLedger({"org-1": 100})
        app = build_app(config=config, store=sql_store, ledger=ledger,
                        adapter_factory=adapter_factory, init_observability=False)
        try:
            await sql_store.add_connection("org-1", "fakemart", {"api_key": "good-key"}, connection_id="c1")
            await sql_store.add_listing(make_listing(id="l1"))
            await sql_store.add_rule(make_rule())

            tick = await app.scheduler.run_once()

            assert tick.outcomes == {"skipped-auth-error": 1}
            assert await sql_store.get_connection_status("c1") == ConnectionStatus.ERROR
            assert ledger.total_charged() == 0
        finally:
            await app.aclose()


class TestTakealotOverHttp:
    """Full tick against a mocked Takealot API"""

    async def test_reprice_then_hold(self, config, sql_store, make_listing, make_rule):
        state = {"prices": {}, "patches": 0}
        client = httpx.AsyncClient(transport=httpx.MockTransport(takealot_handler(state)))
        ledger = InMemoryCreditLedger({"org-1": 100})
        app = build_app(config=config, store=sql_store, ledger=ledger,
                        http_client=client, init_observability=False)
        try:
            await sql_store.add_connection("org-1", "takealot", {"api_key": "good-key"}, connection_id="c1")
            await sql_store.add_listing(make_listing(
                id="l1", sku="SKU-1", marketplace_id="takealot",
                current_price=14999, min_price=10000, max_price=20000,
            ))
            await sql_store.add_rule(make_rule(id="r1"))

            first = await app.scheduler.run_once()
            second = await app.scheduler.run_once()

            assert first.outcomes == {"success": 1}
            assert second.outcomes == {"no-action": 1}
            assert state["prices"]["SKU-1"] == "139.49"
            assert state["patches"] == 1
            assert (await sql_store.get_listing("l1")).current_price == 13949
            assert ledger.total_charged() == 7
            assert len(await sql_store.list_actions(listing_id="l1")) == 2
            assert app.adapter_factory.cache_size == 1
        finally:
            await app.aclose()
            await client.aclose()
