"""
Buy box monitoring for the Buy Box Repricer.
"""

from .monitor import BuyBoxMonitor, BuyBoxMonitorFactory
from .history import BuyBoxHistoryTracker, BuyBoxHistory, BuyBoxSnapshot

__all__ = [
    "BuyBoxMonitor",
    "BuyBoxMonitorFactory",
    "BuyBoxHistoryTracker",
    "BuyBoxHistory",
    "BuyBoxSnapshot",
]
