"""
Custom exceptions for the Buy Box Repricer.

Defines the error taxonomy used by the adapters, the monitor factory, the
credit meter and the scheduler. Each class maps to one handling policy:
retry, skip, circuit-break or clamp.
"""

import asyncio
from typing import Optional, Dict, Any


class RepricerError(Exception):
    """Base exception for all repricer errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception with message and optional details.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(RepricerError):
    """Raised when configuration is invalid or missing."""
    pass


class ValidationError(RepricerError):
    """Raised when a record or rule fails validation."""

    def __init__(self, message: str, field: Optional[str] = None,
                 value: Optional[Any] = None):
        """
        Initialize validation error.

        Args:
            message: Error message
            field: Field name that failed validation
            value: Invalid value
        """
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details)
        self.field = field
        self.value = value


class UnsupportedMarketplace(RepricerError):
    """Raised when no adapter implementation is registered for a marketplace."""

    def __init__(self, marketplace_id: str):
        super().__init__(
            f"Unsupported marketplace: {marketplace_id}",
            {"marketplace_id": marketplace_id}
        )
        self.marketplace_id = marketplace_id


class AuthenticationError(RepricerError):
    """Raised when a marketplace rejects the connection credentials."""

    def __init__(self, message: str, marketplace_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if marketplace_id:
            details["marketplace_id"] = marketplace_id
        super().__init__(message, details)
        self.marketplace_id = marketplace_id


class APIError(RepricerError):
    """Base class for upstream API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 endpoint: Optional[str] = None,
                 response_data: Optional[Any] = None):
        """
        Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            endpoint: API endpoint that failed
            response_data: API response data
        """
        details = {}
        if status_code:
            details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if response_data:
            details["response_data"] = response_data

        super().__init__(message, details)
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_data = response_data


class TransientUpstreamError(APIError):
    """Timeout, rate limit or 5xx. Safe to retry with backoff."""
    pass


class RateLimitError(TransientUpstreamError):
    """Raised when upstream rate limits are exceeded."""

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 endpoint: Optional[str] = None):
        super().__init__(message, status_code=429, endpoint=endpoint)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class PermanentUpstreamError(APIError):
    """Non-retryable 4xx response. The listing is flagged and skipped."""
    pass


class MonitorError(RepricerError):
    """
    Marketplace-agnostic wrapper for any failure raised while checking
    buy box status.

    The original exception is kept on ``cause`` so callers can still decide
    whether the failure is worth retrying or breaks the connection.
    """

    def __init__(self, message: str, marketplace_id: Optional[str] = None,
                 sku: Optional[str] = None, cause: Optional[BaseException] = None):
        details = {}
        if marketplace_id:
            details["marketplace_id"] = marketplace_id
        if sku:
            details["sku"] = sku
        if cause is not None:
            details["cause"] = type(cause).__name__
        super().__init__(message, details)
        self.marketplace_id = marketplace_id
        self.sku = sku
        self.cause = cause

    @property
    def is_transient(self) -> bool:
        return is_transient_error(self.cause) if self.cause is not None else False

    @property
    def is_auth_failure(self) -> bool:
        return isinstance(self.cause, AuthenticationError)


class InsufficientCredits(RepricerError):
    """Raised when an organization cannot afford an action."""

    def __init__(self, organization_id: str, required: int, reason: Optional[str] = None):
        details = {"organization_id": organization_id, "required": required}
        if reason:
            details["reason"] = reason
        super().__init__(f"Insufficient credits for organization {organization_id}", details)
        self.organization_id = organization_id
        self.required = required


class CreditLedgerError(RepricerError):
    """Raised when the credit ledger cannot be reached or answers badly."""
    pass


class InternalInvariantViolation(RepricerError):
    """Raised when a computed price cannot be brought inside listing bounds."""

    def __init__(self, message: str, listing_id: Optional[str] = None,
                 price: Optional[int] = None, min_price: Optional[int] = None,
                 max_price: Optional[int] = None):
        details = {}
        if listing_id:
            details["listing_id"] = listing_id
        if price is not None:
            details["price"] = price
        if min_price is not None:
            details["min_price"] = min_price
        if max_price is not None:
            details["max_price"] = max_price
        super().__init__(message, details)
        self.listing_id = listing_id
        self.price = price


class SchedulingError(RepricerError):
    """Raised when the scheduler cannot be started or stopped."""
    pass


def is_transient_error(exc: BaseException) -> bool:
    """Timeouts, rate limits and 5xx responses are worth another attempt."""
    if isinstance(exc, MonitorError):
        return exc.is_transient
    return isinstance(exc, (TransientUpstreamError, TimeoutError, asyncio.TimeoutError, ConnectionError))


def handle_api_error(response, endpoint: Optional[str] = None,
                     marketplace_id: Optional[str] = None) -> None:
    """
    Handle HTTP response and raise appropriate API error.

    Args:
        response: HTTP response object (httpx.Response)
        endpoint: API endpoint that was called
        marketplace_id: Marketplace the call was made against

    Raises:
        Appropriate error class based on response status.
    """
    status_code = getattr(response, 'status_code', None)

    try:
        response_data = response.json() if hasattr(response, 'json') else None
    except ValueError:
        response_data = None

    if status_code in (401, 403):
        raise AuthenticationError(
            "Marketplace rejected the connection credentials",
            marketplace_id=marketplace_id,
            details={"status_code": status_code, "endpoint": endpoint}
        )
    elif status_code == 429:
        retry_after = response.headers.get('Retry-After') if hasattr(response, 'headers') else None
        try:
            retry_after_seconds = float(retry_after) if retry_after else None
        except ValueError:
            retry_after_seconds = None
        raise RateLimitError(
            "API rate limit exceeded",
            retry_after=retry_after_seconds,
            endpoint=endpoint
        )
    elif status_code is not None and status_code >= 500:
        raise TransientUpstreamError(
            f"Server error: {status_code}",
            status_code=status_code,
            endpoint=endpoint,
            response_data=response_data
        )
    else:
        raise PermanentUpstreamError(
            f"API request failed: {status_code}",
            status_code=status_code,
            endpoint=endpoint,
            response_data=response_data
        )
