"""
TrackedListing model - a product listing under monitoring.
"""

import uuid

from sqlalchemy import Column, String, Integer, Float, Boolean, DateTime, Index, CheckConstraint

from .base import Base, utc_now


class ListingRecord(Base):
    """Stored listing. Prices are integer minor units."""

    __tablename__ = "tracked_listings"

    # Primary Key
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Identity
    organization_id = Column(String(64), nullable=False)
    marketplace_id = Column(String(50), nullable=False)
    sku = Column(String(128), nullable=False)
    category = Column(String(128), nullable=True)

    # Pricing
    current_price = Column(Integer, nullable=False)
    min_price = Column(Integer, nullable=False)
    max_price = Column(Integer, nullable=False)
    cost_price = Column(Integer, nullable=True)
    target_margin_percent = Column(Float, nullable=True)

    # Buy box state
    buybox_owned = Column(Boolean, default=False, nullable=False)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    last_repriced_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_listings_org_marketplace", "organization_id", "marketplace_id"),
        CheckConstraint("min_price <= max_price", name="ck_listings_bounds"),
    )

    def __repr__(self):
        return f"<ListingRecord(id={self.id}, sku='{self.sku}', marketplace='{self.marketplace_id}', price={self.current_price})>"
