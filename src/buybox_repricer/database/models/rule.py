"""
RepricingRule model - a tenant's pricing rule.
"""

import uuid

from sqlalchemy import Column, String, Integer, Boolean, DateTime, JSON, Index

from .base import Base, utc_now


class RuleRecord(Base):
    """Stored repricing rule."""

    __tablename__ = "repricing_rules"

    # Primary Key
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    organization_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=True)

    # Targeting
    scope = Column(String(20), nullable=False)  # sku, category, global
    scope_value = Column(String(128), nullable=True)
    marketplace_ids = Column(JSON, default=list, nullable=False)

    # Strategy
    strategy = Column(String(32), nullable=False)
    parameters = Column(JSON, default=dict, nullable=False)
    priority = Column(Integer, default=50, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_rules_org_enabled", "organization_id", "enabled"),
    )

    def __repr__(self):
        return f"<RuleRecord(id={self.id}, scope='{self.scope}', strategy='{self.strategy}', priority={self.priority})>"
