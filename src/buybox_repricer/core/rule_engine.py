"""
Repricing rule engine.

Selects the rule that governs a listing and turns a buy box check into a
price decision. Everything here is pure: no clock reads, no I/O besides
logging, and the same inputs always give the same verdict.

Rule selection order:
    1. Specificity: sku > category > global (always dominates priority)
    2. Higher priority
    3. Older created_at
    4. Rule id

Strategies (integer minor units):
    MATCH_LOWEST     lowest competitor - undercut (default 1)
    BEAT_BY_AMOUNT   buy box price (or lowest competitor) - amount
    MAINTAIN_MARGIN  ceil(cost / (1 - margin% / 100))

Every target is clamped to [min_price, max_price]. A price that still falls
outside the bounds raises InternalInvariantViolation and must never be sent
to a marketplace.
"""

from decimal import Decimal, ROUND_CEILING
from typing import Iterable, Optional, Union

from buybox_repricer.core.models import (
    TrackedListing, RepricingRule, RepricingStrategy, MonitoringResult,
    PriceDecision, NoActionNeeded
)
from buybox_repricer.utils.exceptions import ValidationError, InternalInvariantViolation
from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)

DEFAULT_UNDERCUT = 1

Decision = Union[PriceDecision, NoActionNeeded]


def _rule_sort_key(rule: RepricingRule):
    return (-rule.specificity, -rule.priority, rule.created_at, rule.id)


def select_rule(listing: TrackedListing, rules: Iterable[RepricingRule]) -> Optional[RepricingRule]:
    """
    Pick the governing rule for a listing.

    Args:
        listing: Listing being evaluated
        rules: Candidate rules (any organization, any state)

    Returns:
        The winning rule, or None if nothing applies
    """
    applicable = [rule for rule in rules if rule.applies_to(listing)]
    if not applicable:
        return None
    return sorted(applicable, key=_rule_sort_key)[0]


def _int_parameter(rule: RepricingRule, name: str, default: Optional[int] = None) -> int:
    value = rule.parameters.get(name, default)
    if value is None:
        raise ValidationError(
            f"{rule.strategy.value} rule {rule.id} requires parameter '{name}'",
            field=name
        )
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"Parameter '{name}' must be an integer amount in minor units",
            field=name, value=value
        )
    if value < 0:
        raise ValidationError(f"Parameter '{name}' cannot be negative", field=name, value=value)
    return value


def margin_floor(cost_price: Optional[int], target_margin_percent: Optional[float]) -> int:
    """
    Lowest price that still earns the target margin, rounded up.

    Raises:
        ValidationError: If cost or margin are missing or out of range
    """
    if cost_price is None:
        raise ValidationError("MAINTAIN_MARGIN requires cost_price", field="cost_price")
    if target_margin_percent is None:
        raise ValidationError("MAINTAIN_MARGIN requires target_margin_percent", field="target_margin_percent")

    pct = Decimal(str(target_margin_percent))
    if pct < 0 or pct >= 100:
        raise ValidationError(
            "target_margin_percent must be in [0, 100)",
            field="target_margin_percent", value=target_margin_percent
        )

    floor = Decimal(cost_price) / (1 - pct / 100)
    return int(floor.to_integral_value(rounding=ROUND_CEILING))


def clamp_price(price: int, min_price: int, max_price: int,
                listing_id: Optional[str] = None) -> int:
    """
    Bring a raw target into [min_price, max_price].

    Raises:
        InternalInvariantViolation: If the result is still out of bounds
    """
    clamped = min(max(price, min_price), max_price)

    if clamped != price:
        logger.info(
            f"Clamped target {price} to {clamped} for listing {listing_id} "
            f"(bounds [{min_price}, {max_price}])"
        )

    if not (min_price <= clamped <= max_price):
        raise InternalInvariantViolation(
            "Computed price outside listing bounds",
            listing_id=listing_id, price=clamped,
            min_price=min_price, max_price=max_price
        )

    return clamped


def _match_lowest(listing: TrackedListing, result: MonitoringResult,
                  rule: RepricingRule) -> Union[int, NoActionNeeded]:
    undercut = _int_parameter(rule, "undercut", DEFAULT_UNDERCUT)

    lowest = result.lowest_competitor_price
    if lowest is None and not result.buybox_owned:
        lowest = result.buybox_price
    if lowest is None:
        return NoActionNeeded("no competitor data", rule.id)

    if result.buybox_owned and listing.current_price <= lowest:
        return NoActionNeeded("buy box owned at or below lowest competitor", rule.id)

    return lowest - undercut


def _beat_by_amount(listing: TrackedListing, result: MonitoringResult,
                    rule: RepricingRule) -> Union[int, NoActionNeeded]:
    amount = _int_parameter(rule, "amount")

    if result.buybox_owned:
        return NoActionNeeded("buy box already owned", rule.id)

    reference = result.buybox_price
    if reference is None:
        reference = result.lowest_competitor_price
    if reference is None:
        return NoActionNeeded("no competitor data", rule.id)

    return reference - amount


def _maintain_margin(listing: TrackedListing, result: MonitoringResult,
                     rule: RepricingRule) -> Union[int, NoActionNeeded]:
    floor = margin_floor(listing.cost_price, listing.target_margin_percent)

    if floor > listing.max_price:
        logger.warning(
            f"Margin floor {floor} exceeds max_price {listing.max_price} "
            f"for listing {listing.id}; capping at max_price"
        )

    if not result.has_competitor_data and listing.current_price >= floor:
        return NoActionNeeded("no competitor data", rule.id)

    return floor


_STRATEGIES = {
    RepricingStrategy.MATCH_LOWEST: _match_lowest,
    RepricingStrategy.BEAT_BY_AMOUNT: _beat_by_amount,
    RepricingStrategy.MAINTAIN_MARGIN: _maintain_margin,
}


def evaluate(listing: TrackedListing, result: MonitoringResult,
             candidate_rules: Iterable[RepricingRule]) -> Decision:
    """
    Decide whether and how to reprice a listing.

    Args:
        listing: Listing being evaluated
        result: Fresh buy box check for the listing
        candidate_rules: Rules of the listing's organization

    Returns:
        PriceDecision with a bounded new price, or NoActionNeeded

    Raises:
        ValidationError: If the selected rule has invalid parameters
        InternalInvariantViolation: If no in-bounds price can be produced
    """
    rule = select_rule(listing, candidate_rules)
    if rule is None:
        return NoActionNeeded("no applicable rule")

    strategy = _STRATEGIES.get(rule.strategy)
    if strategy is None:
        raise ValidationError(f"Unknown strategy {rule.strategy}", field="strategy", value=rule.strategy)

    raw = strategy(listing, result, rule)
    if isinstance(raw, NoActionNeeded):
        return raw

    new_price = clamp_price(raw, listing.min_price, listing.max_price, listing.id)

    if new_price == listing.current_price:
        return NoActionNeeded("price unchanged", rule.id)

    return PriceDecision(
        new_price=new_price,
        rule_id=rule.id,
        strategy=rule.strategy,
        raw_price=raw,
        clamped=new_price != raw,
    )
