"""
Marketplace abstraction layer for the Buy Box Repricer.

Provides unified adapter interface for different marketplace platforms.
"""

from .base import MarketplaceAdapter
from .takealot_adapter import TakealotAdapter, TakealotCredentials
from .amazon_adapter import AmazonAdapter, AmazonCredentials
# factory is imported separately to avoid circular imports

__all__ = [
    "MarketplaceAdapter",
    "TakealotAdapter",
    "TakealotCredentials",
    "AmazonAdapter",
    "AmazonCredentials",
]
