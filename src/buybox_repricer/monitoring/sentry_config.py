"""
Sentry integration for error tracking.

Provides:
- SDK initialization with logging and SQLAlchemy integrations
- Filtering of expected upstream noise (rate limits, missing SKUs)
- Tick-scoped exception capture
"""

import os
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from buybox_repricer.utils.exceptions import RateLimitError, InsufficientCredits, PermanentUpstreamError

logger = logging.getLogger(__name__)


def setup_sentry(
    dsn: Optional[str] = None,
    environment: Optional[str] = None,
    release: Optional[str] = None,
    traces_sample_rate: float = 0.0,
) -> bool:
    """
    Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN, from SENTRY_DSN if not provided
        environment: Deployment environment (production, staging, development)
        release: Release version (e.g., "buybox-repricer@1.0.0")
        traces_sample_rate: Percentage of transactions to trace (0.0-1.0)

    Returns:
        True if Sentry was initialized
    """
    dsn = dsn or os.getenv("SENTRY_DSN")

    if not dsn:
        logger.warning("Sentry DSN not configured, skipping Sentry initialization")
        return False

    environment = environment or os.getenv("SENTRY_ENVIRONMENT", "development")
    release = release or os.getenv("SENTRY_RELEASE", "unknown")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release,
        integrations=[
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        traces_sample_rate=traces_sample_rate,
        before_send=before_send_filter,
        attach_stacktrace=True,
        send_default_pii=False,
        max_breadcrumbs=50,
    )

    logger.info(f"Sentry initialized: environment={environment}, release={release}")
    return True


def before_send_filter(event, hint):
    """
    Filter events before sending to Sentry.

    Returns:
        The event, or None to drop it
    """
    if "exc_info" in hint:
        exc_type, exc_value, tb = hint["exc_info"]

        # Already tracked in metrics
        if isinstance(exc_value, (RateLimitError, InsufficientCredits)):
            return None

        # Unknown SKUs are listing data problems, not engine bugs
        if isinstance(exc_value, PermanentUpstreamError) and exc_value.status_code == 404:
            return None

    return event


def capture_exception(
    exception: BaseException,
    level: str = "error",
    **kwargs
):
    """
    Manually capture an exception to Sentry.

    Args:
        exception: Exception to capture
        level: Severity level (error, warning, info)
        **kwargs: Additional context (tick_id, organization_id, ...)
    """
    with sentry_sdk.new_scope() as scope:
        scope.set_level(level)
        for key, value in kwargs.items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def add_breadcrumb(
    message: str,
    category: str = "repricer",
    level: str = "info",
    **data
):
    """Add a breadcrumb for debugging context."""
    sentry_sdk.add_breadcrumb(
        message=message,
        category=category,
        level=level,
        data=data,
    )
