"""
SQLAlchemy-backed repricing store.

Implements ``RepricingStore`` on top of the ORM models. Sessions are
synchronous, so every call runs in a worker thread through
``asyncio.to_thread`` and is serialized by one lock per store.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from buybox_repricer.core.models import (
    MarketplaceConnection, TrackedListing, RepricingRule, RepricingAction,
    ActionOutcome, ConnectionStatus, utcnow
)
from buybox_repricer.database.connection import Database
from buybox_repricer.database.models import ConnectionRecord, ListingRecord, RuleRecord, ActionRecord
from buybox_repricer.security.encryption import CredentialEncryptor, CredentialDecryptionError
from buybox_repricer.services.repository import RepricingStore
from buybox_repricer.utils.exceptions import ValidationError
from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they were written as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_listing(record: ListingRecord) -> TrackedListing:
    return TrackedListing(
        id=record.id,
        sku=record.sku,
        marketplace_id=record.marketplace_id,
        organization_id=record.organization_id,
        current_price=record.current_price,
        min_price=record.min_price,
        max_price=record.max_price,
        target_margin_percent=record.target_margin_percent,
        cost_price=record.cost_price,
        category=record.category,
        buybox_owned=bool(record.buybox_owned),
        last_checked_at=_aware(record.last_checked_at),
        last_repriced_at=_aware(record.last_repriced_at),
    )


def _to_rule(record: RuleRecord) -> RepricingRule:
    return RepricingRule(
        id=record.id,
        organization_id=record.organization_id,
        name=record.name,
        scope=record.scope,
        scope_value=record.scope_value,
        strategy=record.strategy,
        parameters=dict(record.parameters or {}),
        priority=record.priority,
        enabled=bool(record.enabled),
        created_at=_aware(record.created_at),
        marketplace_ids=list(record.marketplace_ids or []),
    )


def _to_action(record: ActionRecord) -> RepricingAction:
    return RepricingAction(
        listing_id=record.listing_id,
        organization_id=record.organization_id,
        sku=record.sku,
        marketplace_id=record.marketplace_id,
        old_price=record.old_price,
        new_price=record.new_price,
        rule_applied=record.rule_applied,
        outcome=ActionOutcome(record.outcome),
        credits_charged=record.credits_charged,
        timestamp=_aware(record.timestamp),
        tick_id=record.tick_id,
        error=record.error,
    )


class SqlAlchemyRepricingStore(RepricingStore):
    """
    Database-backed store.

    Connection credentials are stored encrypted and decrypted only when the
    scheduler loads active connections. A connection whose credentials
    cannot be decrypted is marked ``error`` and left out of the tick.
    """

    def __init__(self, database: Database, encryptor: CredentialEncryptor):
        self.database = database
        self.encryptor = encryptor
        self._lock = asyncio.Lock()

    async def _run(self, func, *args):
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    # Reads

    def _load_active_connections(self) -> List[MarketplaceConnection]:
        connections = []
        with self.database.get_db_context() as db:
            records = db.query(ConnectionRecord).filter(
                ConnectionRecord.status == ConnectionStatus.ACTIVE.value
            ).all()

            for record in records:
                try:
                    credentials = self.encryptor.decrypt_credentials(record.credentials_encrypted)
                except CredentialDecryptionError as e:
                    logger.error(f"Cannot decrypt credentials for connection {record.id}: {e}")
                    record.status = ConnectionStatus.ERROR.value
                    record.error_message = f"credential decryption failed: {e}"
                    continue

                connections.append(MarketplaceConnection(
                    id=record.id,
                    organization_id=record.organization_id,
                    marketplace_id=record.marketplace_id,
                    credentials=credentials,
                    status=record.status,
                    last_verified_at=_aware(record.last_verified_at),
                    credential_version=record.credential_version or 1,
                    error_message=record.error_message,
                ))
        return connections

    async def list_active_connections(self) -> List[MarketplaceConnection]:
        return await self._run(self._load_active_connections)

    def _load_listings(self, organization_id: str, marketplace_id: str) -> List[TrackedListing]:
        listings = []
        with self.database.get_db_context() as db:
            records = db.query(ListingRecord).filter(
                ListingRecord.organization_id == organization_id,
                ListingRecord.marketplace_id == marketplace_id,
            ).order_by(ListingRecord.created_at, ListingRecord.id).all()

            for record in records:
                try:
                    listings.append(_to_listing(record))
                except ValidationError as e:
                    logger.warning(f"Skipping invalid listing {record.id}: {e}")
        return listings

    async def list_listings(self, connection: MarketplaceConnection) -> List[TrackedListing]:
        return await self._run(self._load_listings, connection.organization_id, connection.marketplace_id)

    def _load_rules(self, organization_id: str) -> List[RepricingRule]:
        rules = []
        with self.database.get_db_context() as db:
            records = db.query(RuleRecord).filter(RuleRecord.organization_id == organization_id).all()
            for record in records:
                try:
                    rules.append(_to_rule(record))
                except (ValidationError, ValueError) as e:
                    logger.warning(f"Skipping invalid rule {record.id}: {e}")
        return rules

    async def list_rules(self, organization_id: str) -> List[RepricingRule]:
        return await self._run(self._load_rules, organization_id)

    def _load_actions(self, listing_id: Optional[str], tick_id: Optional[str]) -> List[RepricingAction]:
        with self.database.get_db_context() as db:
            query = db.query(ActionRecord)
            if listing_id:
                query = query.filter(ActionRecord.listing_id == listing_id)
            if tick_id:
                query = query.filter(ActionRecord.tick_id == tick_id)
            return [_to_action(r) for r in query.order_by(ActionRecord.id).all()]

    async def list_actions(self, listing_id: Optional[str] = None,
                           tick_id: Optional[str] = None) -> List[RepricingAction]:
        """Audit trail, oldest first."""
        return await self._run(self._load_actions, listing_id, tick_id)

    async def get_listing(self, listing_id: str) -> Optional[TrackedListing]:
        def load():
            with self.database.get_db_context() as db:
                record = db.get(ListingRecord, listing_id)
                return _to_listing(record) if record else None

        return await self._run(load)

    async def get_connection_status(self, connection_id: str) -> Optional[ConnectionStatus]:
        def load():
            with self.database.get_db_context() as db:
                record = db.get(ConnectionRecord, connection_id)
                return ConnectionStatus(record.status) if record else None

        return await self._run(load)

    # Writes

    def _mark_connection_error(self, connection_id: str, message: str) -> None:
        with self.database.get_db_context() as db:
            record = db.get(ConnectionRecord, connection_id)
            if record is None:
                logger.warning(f"Cannot mark unknown connection {connection_id} as errored")
                return
            record.status = ConnectionStatus.ERROR.value
            record.error_message = message
            record.last_verified_at = utcnow()

    async def mark_connection_error(self, connection_id: str, message: str) -> None:
        await self._run(self._mark_connection_error, connection_id, message)

    def _save_listing(self, listing: TrackedListing) -> None:
        with self.database.get_db_context() as db:
            record = db.get(ListingRecord, listing.id)
            if record is None:
                logger.warning(f"Listing {listing.id} disappeared before it could be saved")
                return
            # Only the engine-owned columns; bounds and costs belong to the tenant
            record.current_price = listing.current_price
            record.buybox_owned = listing.buybox_owned
            record.last_checked_at = listing.last_checked_at
            record.last_repriced_at = listing.last_repriced_at

    async def save_listing(self, listing: TrackedListing) -> None:
        await self._run(self._save_listing, listing)

    def _append_action(self, action: RepricingAction) -> None:
        with self.database.get_db_context() as db:
            db.add(ActionRecord(
                tick_id=action.tick_id,
                listing_id=action.listing_id,
                organization_id=action.organization_id,
                sku=action.sku,
                marketplace_id=action.marketplace_id,
                old_price=action.old_price,
                new_price=action.new_price,
                rule_applied=action.rule_applied,
                outcome=action.outcome.value,
                credits_charged=action.credits_charged,
                error=action.error,
                timestamp=action.timestamp,
            ))

    async def append_action(self, action: RepricingAction) -> None:
        await self._run(self._append_action, action)

    # Provisioning

    async def add_connection(self, organization_id: str, marketplace_id: str,
                             credentials: Dict[str, Any],
                             connection_id: Optional[str] = None,
                             credential_version: int = 1) -> MarketplaceConnection:
        """Store a new connection with its credentials encrypted."""
        connection = MarketplaceConnection(
            id=connection_id or str(uuid.uuid4()),
            organization_id=organization_id,
            marketplace_id=marketplace_id,
            credentials=credentials,
            credential_version=credential_version,
        )
        encrypted = self.encryptor.encrypt_credentials(credentials)

        def insert():
            with self.database.get_db_context() as db:
                db.add(ConnectionRecord(
                    id=connection.id,
                    organization_id=organization_id,
                    marketplace_id=marketplace_id,
                    credentials_encrypted=encrypted,
                    credential_version=credential_version,
                    status=ConnectionStatus.ACTIVE.value,
                ))

        await self._run(insert)
        logger.info(f"Added {marketplace_id} connection {connection.id} for org {organization_id}")
        return connection

    async def add_listing(self, listing: TrackedListing) -> None:
        def insert():
            with self.database.get_db_context() as db:
                db.add(ListingRecord(
                    id=listing.id,
                    organization_id=listing.organization_id,
                    marketplace_id=listing.marketplace_id,
                    sku=listing.sku,
                    category=listing.category,
                    current_price=listing.current_price,
                    min_price=listing.min_price,
                    max_price=listing.max_price,
                    cost_price=listing.cost_price,
                    target_margin_percent=listing.target_margin_percent,
                    buybox_owned=listing.buybox_owned,
                    last_checked_at=listing.last_checked_at,
                    last_repriced_at=listing.last_repriced_at,
                ))

        await self._run(insert)

    async def add_rule(self, rule: RepricingRule) -> None:
        def insert():
            with self.database.get_db_context() as db:
                db.add(RuleRecord(
                    id=rule.id,
                    organization_id=rule.organization_id,
                    name=rule.name,
                    scope=rule.scope.value,
                    scope_value=rule.scope_value,
                    marketplace_ids=list(rule.marketplace_ids),
                    strategy=rule.strategy.value,
                    parameters=dict(rule.parameters),
                    priority=rule.priority,
                    enabled=rule.enabled,
                    created_at=rule.created_at,
                ))

        await self._run(insert)
