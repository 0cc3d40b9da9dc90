"""
Monitoring module for metrics and observability.
"""

from .prometheus_metrics import RepricerMetrics
from .sentry_config import setup_sentry, capture_exception

__all__ = [
    "RepricerMetrics",
    "setup_sentry",
    "capture_exception",
]
