"""
Repricing store interface.

The engine reads connections, listings and rules at tick start and writes
listings and audit actions at the end of each listing's pipeline. The
persistence layer behind this interface is owned elsewhere.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from buybox_repricer.core.models import (
    MarketplaceConnection, TrackedListing, RepricingRule, RepricingAction,
    ConnectionStatus, utcnow
)
from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)


class RepricingStore(ABC):
    """Data access contract used by the scheduler and the pipeline."""

    @abstractmethod
    async def list_active_connections(self) -> List[MarketplaceConnection]:
        """Connections with status ``active``, credentials decrypted."""
        pass

    @abstractmethod
    async def list_listings(self, connection: MarketplaceConnection) -> List[TrackedListing]:
        """Listings of the connection's organization on the connection's marketplace."""
        pass

    @abstractmethod
    async def list_rules(self, organization_id: str) -> List[RepricingRule]:
        pass

    @abstractmethod
    async def mark_connection_error(self, connection_id: str, message: str) -> None:
        pass

    @abstractmethod
    async def save_listing(self, listing: TrackedListing) -> None:
        pass

    @abstractmethod
    async def append_action(self, action: RepricingAction) -> None:
        pass


class InMemoryRepricingStore(RepricingStore):
    """Dictionary-backed store for tests and local runs."""

    def __init__(self, connections: Iterable[MarketplaceConnection] = (),
                 listings: Iterable[TrackedListing] = (),
                 rules: Iterable[RepricingRule] = ()):
        self.connections: Dict[str, MarketplaceConnection] = {c.id: c for c in connections}
        self.listings: Dict[str, TrackedListing] = {l.id: l for l in listings}
        self.rules: Dict[str, RepricingRule] = {r.id: r for r in rules}
        self.actions: List[RepricingAction] = []
        self._lock = asyncio.Lock()

    def add_connection(self, connection: MarketplaceConnection) -> None:
        self.connections[connection.id] = connection

    def add_listing(self, listing: TrackedListing) -> None:
        self.listings[listing.id] = listing

    def add_rule(self, rule: RepricingRule) -> None:
        self.rules[rule.id] = rule

    def actions_for(self, listing_id: str, tick_id: Optional[str] = None) -> List[RepricingAction]:
        return [
            a for a in self.actions
            if a.listing_id == listing_id and (tick_id is None or a.tick_id == tick_id)
        ]

    async def list_active_connections(self) -> List[MarketplaceConnection]:
        return [c for c in self.connections.values() if c.status == ConnectionStatus.ACTIVE]

    async def list_listings(self, connection: MarketplaceConnection) -> List[TrackedListing]:
        return [
            l for l in self.listings.values()
            if l.organization_id == connection.organization_id
            and l.marketplace_id == connection.marketplace_id
        ]

    async def list_rules(self, organization_id: str) -> List[RepricingRule]:
        return [r for r in self.rules.values() if r.organization_id == organization_id]

    async def mark_connection_error(self, connection_id: str, message: str) -> None:
        async with self._lock:
            connection = self.connections.get(connection_id)
            if connection is None:
                logger.warning(f"Cannot mark unknown connection {connection_id} as errored")
                return
            self.connections[connection_id] = replace(
                connection, status=ConnectionStatus.ERROR, error_message=message,
                last_verified_at=utcnow()
            )

    async def save_listing(self, listing: TrackedListing) -> None:
        async with self._lock:
            self.listings[listing.id] = listing

    async def append_action(self, action: RepricingAction) -> None:
        async with self._lock:
            self.actions.append(action)
