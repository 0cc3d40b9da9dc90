"""
Unit tests for the data model
"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from buybox_repricer.core.models import (
    ActionOutcome, BuyBoxOwnership, ConnectionStatus, MarketplaceConnection, RepricingAction,
    RuleScope, from_minor_units, to_minor_units
)
from buybox_repricer.utils.exceptions import ValidationError


class TestMinorUnits:
    """Test price conversions"""

    @pytest.mark.parametrize("amount,expected", [("19.99", 1999), (20, 2000), ("0.005", 1), (19.995, 2000)])
    def test_to_minor_units(self, amount, expected):
        assert to_minor_units(amount) == expected

    def test_from_minor_units(self):
        assert from_minor_units(1999) == Decimal("19.99")
        assert str(from_minor_units(100)) == "1.00"


class TestTrackedListing:
    """Test listing validation"""

    @pytest.mark.parametrize("overrides", [
        {"min_price": 2500},
        {"current_price": 900},
        {"current_price": 2100},
        {"current_price": 15.5},
        {"min_price": -1},
        {"cost_price": -5},
        {"sku": " "},
    ])
    def test_invalid_listing(self, make_listing, overrides):
        with pytest.raises(ValidationError):
            make_listing(**overrides)

    def test_with_reprice_is_a_copy(self, make_listing):
        listing = make_listing(current_price=1500)
        at = datetime(2024, 1, 1, tzinfo=timezone.utc)

        repriced = listing.with_reprice(1400, True, at)

        assert listing.current_price == 1500
        assert repriced.current_price == 1400
        assert repriced.last_repriced_at == at
        assert repriced.buybox_owned is True

    def test_with_reprice_revalidates_bounds(self, make_listing):
        with pytest.raises(ValidationError):
            make_listing().with_reprice(5000, False, datetime.now(timezone.utc))


class TestRecords:
    """Test connections, rules, results and actions"""

    def test_connection_coerces_status_and_hides_credentials(self, make_connection):
        connection = make_connection(status="error")

        assert connection.status == ConnectionStatus.ERROR
        assert not connection.is_active
        assert "credentials" not in connection.to_dict()

    def test_connection_requires_organization(self):
        with pytest.raises(ValidationError):
            MarketplaceConnection(id="c", organization_id="", marketplace_id="takealot")

    def test_rule_coerces_enums(self, make_rule):
        rule = make_rule(scope="category", scope_value="toys", strategy="BEAT_BY_AMOUNT")

        assert rule.scope == RuleScope.CATEGORY
        assert rule.specificity == 2
        assert rule.to_dict()["strategy"] == "BEAT_BY_AMOUNT"

    def test_competitor_prices_sorted(self, make_result):
        result = make_result(competitors=[1500, 1200, 1300])

        assert result.competitor_prices == (1200, 1300, 1500)
        assert result.lowest_competitor_price == 1200

    @pytest.mark.parametrize("owned,buybox_price,expected", [
        (True, 1500, BuyBoxOwnership.OWNED),
        (False, 1500, BuyBoxOwnership.NOT_OWNED),
        (False, None, BuyBoxOwnership.NO_BUY_BOX),
    ])
    def test_ownership(self, make_result, owned, buybox_price, expected):
        assert make_result(owned=owned, buybox_price=buybox_price).ownership == expected

    def test_action_to_dict(self):
        action = RepricingAction(
            listing_id="l1", organization_id="org-1", sku="SKU-1", marketplace_id="takealot",
            old_price=1500, new_price=None, rule_applied=None,
            outcome=ActionOutcome.SKIPPED_INSUFFICIENT_CREDITS,
        )

        data = action.to_dict()

        assert data["outcome"] == "skipped-insufficient-credits"
        assert data["credits_charged"] == 0
