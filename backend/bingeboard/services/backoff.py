"""
backoff.py

Retry helper shared by the catalog clients and the nightly aggregator.
Delay grows with the attempt number (base_delay * attempt); only errors the
classifier accepts are retried, everything else propagates immediately.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from bingeboard.errors import RateLimitExceeded, is_transient_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def with_backoff(
    func: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
    label: Optional[str] = None,
    **kwargs,
) -> T:
    """Run func, retrying up to max_retries times after the first attempt."""
    label = label or getattr(func, "__name__", "call")
    attempt = 0
    while True:
        try:
            result = await func(*args, **kwargs)
            if attempt:
                logger.info(f"{label} succeeded after {attempt} retr{'y' if attempt == 1 else 'ies'}")
            return result
        except Exception as e:
            retryable = is_retryable(e)
            if not retryable or attempt >= max_retries:
                if retryable:
                    logger.error(f"{label} failed after {attempt} retries: {e}")
                raise
            attempt += 1
            delay = base_delay * attempt
            if isinstance(e, RateLimitExceeded) and e.retry_after:
                delay = max(delay, e.retry_after)
            delay = min(delay, max_delay)
            logger.warning(f"{label} attempt {attempt}/{max_retries} after transient error, sleeping {delay:.2f}s: {e}")
            await asyncio.sleep(delay)
