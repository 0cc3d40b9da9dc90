"""
RepricingAction model - append-only audit trail.
"""

from sqlalchemy import Column, String, Integer, DateTime, Text, Index

from .base import Base, utc_now


class ActionRecord(Base):
    """
    One audit row per listing per tick.

    Rows are only ever inserted.
    """

    __tablename__ = "repricing_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    tick_id = Column(String(32), nullable=True)
    listing_id = Column(String(36), nullable=False)
    organization_id = Column(String(64), nullable=False)
    sku = Column(String(128), nullable=False)
    marketplace_id = Column(String(50), nullable=False)

    old_price = Column(Integer, nullable=False)
    new_price = Column(Integer, nullable=True)
    rule_applied = Column(String(36), nullable=True)
    outcome = Column(String(40), nullable=False)
    credits_charged = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)

    timestamp = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_actions_org_timestamp", "organization_id", "timestamp"),
        Index("ix_actions_listing", "listing_id"),
        Index("ix_actions_tick", "tick_id"),
    )

    def __repr__(self):
        return f"<ActionRecord(id={self.id}, listing={self.listing_id}, outcome='{self.outcome}')>"
