"""
Persistence for connections, listings, rules and the audit trail.
"""

from .connection import Database
from .store import SqlAlchemyRepricingStore

__all__ = [
    "Database",
    "SqlAlchemyRepricingStore",
]
