"""
Data models for the Buy Box Repricer.

Defines the tenant-scoped records the engine reads (connections, listings,
rules), the ephemeral monitoring result and the append-only audit record.

All prices are integer minor-currency units (cents). Marketplace decimal
prices are converted with ``to_minor_units`` / ``from_minor_units``.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import List, Optional, Dict, Any, Tuple, Union

from buybox_repricer.utils.exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_minor_units(amount: Union[str, int, float, Decimal]) -> int:
    """Convert a decimal marketplace price (e.g. ``"19.99"``) to minor units."""
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    """Convert minor units back to a two-decimal price."""
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class ConnectionStatus(Enum):
    """Marketplace connection status."""
    ACTIVE = "active"
    ERROR = "error"
    REVOKED = "revoked"


class RuleScope(Enum):
    """What a repricing rule targets."""
    SKU = "sku"
    CATEGORY = "category"
    GLOBAL = "global"

    @property
    def specificity(self) -> int:
        return {RuleScope.SKU: 3, RuleScope.CATEGORY: 2, RuleScope.GLOBAL: 1}[self]


class RepricingStrategy(Enum):
    """Pricing strategies."""
    MATCH_LOWEST = "MATCH_LOWEST"
    BEAT_BY_AMOUNT = "BEAT_BY_AMOUNT"
    MAINTAIN_MARGIN = "MAINTAIN_MARGIN"


class ActionOutcome(Enum):
    """Terminal outcome of one listing in one tick."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED_INSUFFICIENT_CREDITS = "skipped-insufficient-credits"
    SKIPPED_AUTH_ERROR = "skipped-auth-error"
    NO_ACTION = "no-action"


class BuyBoxOwnership(Enum):
    """Buy box ownership as seen in one check."""
    OWNED = "owned"
    NOT_OWNED = "not_owned"
    NO_BUY_BOX = "no_buy_box"
    UNKNOWN = "unknown"


@dataclass
class MarketplaceConnection:
    """
    A tenant's authenticated link to one marketplace account.

    ``credentials`` is an opaque payload interpreted only by the adapter.
    The record never references a live adapter.
    """

    id: str
    organization_id: str
    marketplace_id: str
    credentials: Dict[str, Any] = field(default_factory=dict)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    last_verified_at: Optional[datetime] = None
    credential_version: int = 1
    error_message: Optional[str] = None

    def __post_init__(self):
        if not self.organization_id:
            raise ValidationError("Connection must belong to an organization", field="organization_id")
        if not self.marketplace_id:
            raise ValidationError("Connection must name a marketplace", field="marketplace_id")
        if isinstance(self.status, str):
            self.status = ConnectionStatus(self.status)

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (credentials omitted)."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "marketplace_id": self.marketplace_id,
            "status": self.status.value,
            "last_verified_at": self.last_verified_at.isoformat() if self.last_verified_at else None,
            "credential_version": self.credential_version,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class TrackedListing:
    """
    One product listing the engine monitors and reprices.

    Immutable: updates produce a new value through ``with_check`` or
    ``with_reprice``. Construction enforces ``min_price <= current_price <=
    max_price``.
    """

    id: str
    sku: str
    marketplace_id: str
    organization_id: str
    current_price: int
    min_price: int
    max_price: int
    target_margin_percent: Optional[float] = None
    cost_price: Optional[int] = None
    category: Optional[str] = None
    buybox_owned: bool = False
    last_checked_at: Optional[datetime] = None
    last_repriced_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.sku or not self.sku.strip():
            raise ValidationError("Listing SKU cannot be empty", field="sku")

        for name in ("current_price", "min_price", "max_price"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValidationError("Prices must be integer minor units", field=name, value=value)
            if value < 0:
                raise ValidationError("Prices cannot be negative", field=name, value=value)

        if self.min_price > self.max_price:
            raise ValidationError(
                f"min_price {self.min_price} exceeds max_price {self.max_price}",
                field="min_price", value=self.min_price
            )

        if not (self.min_price <= self.current_price <= self.max_price):
            raise ValidationError(
                f"current_price {self.current_price} outside [{self.min_price}, {self.max_price}]",
                field="current_price", value=self.current_price
            )

        if self.cost_price is not None and self.cost_price < 0:
            raise ValidationError("Cost price cannot be negative", field="cost_price", value=self.cost_price)

    def with_check(self, buybox_owned: bool, checked_at: datetime) -> "TrackedListing":
        """Return a copy reflecting a completed buy box check."""
        return replace(self, buybox_owned=buybox_owned, last_checked_at=checked_at)

    def with_reprice(self, new_price: int, buybox_owned: bool, at: datetime) -> "TrackedListing":
        """Return a copy with the new price applied. Bounds are re-validated."""
        return replace(
            self,
            current_price=new_price,
            buybox_owned=buybox_owned,
            last_checked_at=at,
            last_repriced_at=at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "sku": self.sku,
            "marketplace_id": self.marketplace_id,
            "organization_id": self.organization_id,
            "current_price": self.current_price,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "target_margin_percent": self.target_margin_percent,
            "cost_price": self.cost_price,
            "category": self.category,
            "buybox_owned": self.buybox_owned,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "last_repriced_at": self.last_repriced_at.isoformat() if self.last_repriced_at else None,
        }


@dataclass
class RepricingRule:
    """
    A tenant's pricing rule.

    ``scope_value`` holds the SKU or category the rule targets and is None
    for global rules. An empty ``marketplace_ids`` list means the rule applies
    on every marketplace.
    """

    id: str
    organization_id: str
    scope: RuleScope
    strategy: RepricingStrategy
    parameters: Dict[str, Any] = field(default_factory=dict)
    scope_value: Optional[str] = None
    priority: int = 50
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    marketplace_ids: List[str] = field(default_factory=list)
    name: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.scope, str):
            self.scope = RuleScope(self.scope)
        if isinstance(self.strategy, str):
            self.strategy = RepricingStrategy(self.strategy)

        if self.scope != RuleScope.GLOBAL and not self.scope_value:
            raise ValidationError(
                f"{self.scope.value} rule requires a scope_value", field="scope_value"
            )

    @property
    def specificity(self) -> int:
        return self.scope.specificity

    def applies_to(self, listing: TrackedListing) -> bool:
        """True if this rule may be used for the listing."""
        if not self.enabled or self.organization_id != listing.organization_id:
            return False

        if self.marketplace_ids and listing.marketplace_id not in self.marketplace_ids:
            return False

        if self.scope == RuleScope.SKU:
            return self.scope_value == listing.sku
        if self.scope == RuleScope.CATEGORY:
            return listing.category is not None and self.scope_value == listing.category
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "scope": self.scope.value,
            "scope_value": self.scope_value,
            "strategy": self.strategy.value,
            "parameters": dict(self.parameters),
            "priority": self.priority,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
            "marketplace_ids": list(self.marketplace_ids),
        }


@dataclass
class MonitoringResult:
    """Buy box status of one SKU at one point in time."""

    sku: str
    marketplace_id: str
    buybox_owned: bool
    buybox_price: Optional[int] = None
    competitor_prices: Tuple[int, ...] = ()
    own_price: Optional[int] = None
    checked_at: datetime = field(default_factory=utcnow)
    latency_ms: Optional[float] = None
    error: Optional[str] = None

    def __post_init__(self):
        # Always ascending, whatever order the marketplace returned
        self.competitor_prices = tuple(sorted(self.competitor_prices))

    @property
    def lowest_competitor_price(self) -> Optional[int]:
        return self.competitor_prices[0] if self.competitor_prices else None

    @property
    def has_competitor_data(self) -> bool:
        return bool(self.competitor_prices) or self.buybox_price is not None

    @property
    def ownership(self) -> BuyBoxOwnership:
        if self.error:
            return BuyBoxOwnership.UNKNOWN
        if self.buybox_owned:
            return BuyBoxOwnership.OWNED
        if self.buybox_price is None:
            return BuyBoxOwnership.NO_BUY_BOX
        return BuyBoxOwnership.NOT_OWNED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "sku": self.sku,
            "marketplace_id": self.marketplace_id,
            "buybox_owned": self.buybox_owned,
            "buybox_price": self.buybox_price,
            "competitor_prices": list(self.competitor_prices),
            "own_price": self.own_price,
            "checked_at": self.checked_at.isoformat(),
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


@dataclass(frozen=True)
class PriceUpdateResult:
    """What the marketplace said about a price push."""
    success: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class PriceDecision:
    """Rule engine verdict: push ``new_price``."""
    new_price: int
    rule_id: str
    strategy: RepricingStrategy
    raw_price: int
    clamped: bool = False


@dataclass(frozen=True)
class NoActionNeeded:
    """Rule engine verdict: leave the price alone."""
    reason: str
    rule_id: Optional[str] = None


@dataclass(frozen=True)
class RepricingAction:
    """Append-only audit record, exactly one per listing per tick."""

    listing_id: str
    organization_id: str
    sku: str
    marketplace_id: str
    old_price: int
    new_price: Optional[int]
    rule_applied: Optional[str]
    outcome: ActionOutcome
    credits_charged: int = 0
    timestamp: datetime = field(default_factory=utcnow)
    tick_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "listing_id": self.listing_id,
            "organization_id": self.organization_id,
            "sku": self.sku,
            "marketplace_id": self.marketplace_id,
            "old_price": self.old_price,
            "new_price": self.new_price,
            "rule_applied": self.rule_applied,
            "outcome": self.outcome.value,
            "credits_charged": self.credits_charged,
            "timestamp": self.timestamp.isoformat(),
            "tick_id": self.tick_id,
            "error": self.error,
        }
