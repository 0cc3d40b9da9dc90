"""
SQLAlchemy database models for the repricing engine.

Models:
- ConnectionRecord: Marketplace connections with encrypted credentials
- ListingRecord: Tracked listings and their price bounds
- RuleRecord: Repricing rules
- ActionRecord: Append-only repricing audit trail
"""

from .base import Base
from .connection import ConnectionRecord
from .listing import ListingRecord
from .rule import RuleRecord
from .action import ActionRecord

__all__ = [
    "Base",
    "ConnectionRecord",
    "ListingRecord",
    "RuleRecord",
    "ActionRecord",
]
