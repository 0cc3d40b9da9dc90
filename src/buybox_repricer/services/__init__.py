"""
Services layer for the Buy Box Repricer.

Contains the repricing scheduler, the per-listing pipeline, the credit
metering boundary and the store interface.
"""

from .credits import CreditLedger, CreditMeter, HttpCreditLedger, InMemoryCreditLedger, ChargeResult
from .repository import RepricingStore, InMemoryRepricingStore
from .repricing_pipeline import ListingPipeline, ConnectionBreaker, ListingResult
from .scheduler import RepricingScheduler, TickResult, TickState

__all__ = [
    "CreditLedger",
    "CreditMeter",
    "HttpCreditLedger",
    "InMemoryCreditLedger",
    "ChargeResult",
    "RepricingStore",
    "InMemoryRepricingStore",
    "ListingPipeline",
    "ConnectionBreaker",
    "ListingResult",
    "RepricingScheduler",
    "TickResult",
    "TickState",
]
