import asyncio
from typing import Optional

import httpx
from sqlalchemy.exc import OperationalError


class CatalogError(Exception):
    """Base exception for catalog provider errors."""

    def __init__(self, message: str, source: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class CatalogAuthError(CatalogError):
    """Raised when a provider API key is missing or rejected."""
    pass


class CatalogUnavailableError(CatalogError):
    """Raised when a provider is offline, times out or returns 5xx."""
    pass


class RateLimitExceeded(CatalogError):
    """Raised when a provider answers 429."""

    def __init__(self, message: str, source: Optional[str] = None, retry_after: Optional[float] = None):
        super().__init__(message, source=source, status_code=429)
        self.retry_after = retry_after


class TransientError(Exception):
    """Infrastructure hiccup worth retrying (connection reset, timeout, lock contention)."""
    pass


class MetricsStoreError(Exception):
    """Raised when the metrics store cannot be reached or written."""
    pass


TRANSIENT_PATTERNS = (
    "econnreset",
    "etimedout",
    "enotfound",
    "database is locked",
    "connection timeout",
    "connection reset",
    "connection refused",
    "lock timeout",
    "deadlock detected",
)


def is_transient_error(error: BaseException) -> bool:
    if isinstance(error, (TransientError, ConnectionError, TimeoutError, asyncio.TimeoutError, httpx.TransportError)):
        return True
    if isinstance(error, RateLimitExceeded):
        return True
    message = str(error).lower()
    if isinstance(error, OperationalError):
        message = f"{message} {str(error.orig).lower()}"
    code = str(getattr(error, "code", "") or "").lower()
    return any(p in message or p == code for p in TRANSIENT_PATTERNS)
