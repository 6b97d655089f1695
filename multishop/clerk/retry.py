"""Exponential backoff with jitter for async API calls.

Retries on transient HTTP errors (429, 500, 502, 503, 504), connection errors
and timeouts (connect, read, write, pool).
Respects Retry-After headers. Logs each retry attempt.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def retry_with_backoff(
    max_retries: int | Callable[[Any], int] = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    jitter: float = 0.3,
) -> Callable:
    """Decorator: retry a coroutine with exponential backoff + jitter.

    Args:
        max_retries: Maximum number of retry attempts, or a callable taking the
            bound instance (first positional arg) and returning it.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.0-1.0). Adds randomness to prevent thundering herd.
    """

    def decorator(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            retries = max_retries(args[0]) if callable(max_retries) else max_retries
            for attempt in range(retries + 1):
                try:
                    return await fn(*args, **kwargs)
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status not in RETRYABLE_STATUS_CODES or attempt == retries:
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, jitter, e.response)
                    logger.warning(
                        "Retry %d/%d for %s (HTTP %d), waiting %.1fs",
                        attempt + 1,
                        retries,
                        fn.__name__,
                        status,
                        delay,
                    )
                    await asyncio.sleep(delay)
                except (httpx.ConnectError, httpx.TimeoutException) as e:
                    if attempt == retries:
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, jitter)
                    logger.warning(
                        "Retry %d/%d for %s (connection error: %s), waiting %.1fs",
                        attempt + 1,
                        retries,
                        fn.__name__,
                        type(e).__name__,
                        delay,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Compute delay with exponential backoff + jitter, respecting Retry-After."""
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(float(retry_after), max_delay)
            except ValueError:
                pass

    # Exponential backoff: base * 2^attempt
    delay = min(base_delay * (2**attempt), max_delay)

    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.05, delay)
