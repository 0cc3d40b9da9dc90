"""
MarketplaceConnection model - a tenant's credentials for one marketplace.
"""

import uuid

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index

from .base import Base, utc_now


class ConnectionRecord(Base):
    """
    Stored marketplace connection.

    ``credentials_encrypted`` holds ``{"encrypted": "<fernet token>"}``; the
    plaintext never touches the database.
    """

    __tablename__ = "marketplace_connections"

    # Primary Key
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Ownership
    organization_id = Column(String(64), nullable=False, index=True)
    marketplace_id = Column(String(50), nullable=False)

    # Credentials
    credentials_encrypted = Column(JSON, nullable=False)
    credential_version = Column(Integer, default=1, nullable=False)

    # Status
    status = Column(String(20), default="active", nullable=False)  # active, error, revoked
    error_message = Column(Text, nullable=True)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_connections_status", "status"),
        Index("ix_connections_org_marketplace", "organization_id", "marketplace_id"),
    )

    def __repr__(self):
        return f"<ConnectionRecord(id={self.id}, org={self.organization_id}, marketplace='{self.marketplace_id}', status='{self.status}')>"
