"""
base.py

Shared HTTP plumbing for the catalog clients.
- Async httpx client per request, optional injected transport
- 401/403 -> CatalogAuthError, 429 -> RateLimitExceeded (Retry-After honoured), 5xx -> CatalogUnavailableError
- 429, 5xx and transport errors are retried through with_backoff
"""
import logging
from typing import Any, Dict, Optional

import httpx

from bingeboard.errors import (
    CatalogAuthError,
    CatalogError,
    CatalogUnavailableError,
    RateLimitExceeded,
    is_transient_error,
)
from bingeboard.services.backoff import with_backoff

logger = logging.getLogger(__name__)


def _retryable(error: BaseException) -> bool:
    return isinstance(error, CatalogUnavailableError) or is_transient_error(error)


def _retry_after(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class CatalogClient:
    source: str = "catalog"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    def _check_response(self, resp: httpx.Response) -> None:
        if resp.status_code in (401, 403):
            raise CatalogAuthError(f"{self.source} rejected credentials", source=self.source, status_code=resp.status_code)
        if resp.status_code == 429:
            raise RateLimitExceeded(f"{self.source} rate limit hit", source=self.source, retry_after=_retry_after(resp))
        if resp.status_code >= 500:
            raise CatalogUnavailableError(
                f"{self.source} returned {resp.status_code}", source=self.source, status_code=resp.status_code
            )
        if resp.status_code >= 400:
            raise CatalogError(f"{self.source} returned {resp.status_code}", source=self.source, status_code=resp.status_code)

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None,
                        headers: Optional[Dict[str, str]] = None) -> Any:
        url = f"{self.base_url}{path}"

        async def make_request():
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(url, params=params, headers=headers)
                self._check_response(resp)
                return resp.json()

        try:
            data = await with_backoff(
                make_request,
                max_retries=self.max_retries,
                base_delay=self.retry_base_delay,
                is_retryable=_retryable,
                label=f"{self.source} GET {path}",
            )
        except httpx.TransportError as e:
            raise CatalogUnavailableError(f"{self.source} unreachable: {e}", source=self.source) from e
        except ValueError as e:
            raise CatalogError(f"{self.source} returned invalid JSON: {e}", source=self.source) from e
        if not isinstance(data, (dict, list)):
            raise CatalogError(f"{self.source} returned unexpected payload", source=self.source)
        return data
