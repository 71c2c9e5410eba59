"""Error classification and rate-limit backoff"""

import asyncio
import random
from typing import Awaitable, Callable, Optional

import httpx
from loguru import logger

from .config import (
    BACKOFF_MULTIPLIER,
    RATE_LIMIT_BASE_DELAY,
    RATE_LIMIT_JITTER,
    RATE_LIMIT_MAX_DELAY,
    RATE_LIMIT_MAX_RETRIES,
)
from .exceptions import NodeBannedError, RateLimitError
from .models import ErrorType


def rate_limit_delay(
    attempt: int,
    base_delay: float = RATE_LIMIT_BASE_DELAY,
    max_delay: float = RATE_LIMIT_MAX_DELAY,
    jitter: float = RATE_LIMIT_JITTER,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Backoff before retry number ``attempt`` (1-based).

    ``min(base * 2^(attempt-1) + U(0, jitter), max_delay)``
    """
    uniform = rng.uniform if rng is not None else random.uniform
    backoff = base_delay * BACKOFF_MULTIPLIER ** (attempt - 1)
    return min(backoff + uniform(0, jitter), max_delay)


async def retry_on_rate_limit(
    func: Callable[[], Awaitable],
    max_retries: int = RATE_LIMIT_MAX_RETRIES,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
):
    """
    Call ``func`` again while it raises RateLimitError.

    Args:
        func: Zero-argument coroutine function
        max_retries: Retries after the first call
        sleep: Awaitable sleep (injectable for tests)
        rng: Random source for the jitter

    Raises:
        RateLimitError: Still rate limited after ``max_retries`` retries
    """
    attempt = 1
    while True:
        try:
            result = await func()
        except RateLimitError:
            if attempt > max_retries:
                raise RateLimitError(f"Rate limit exceeded after {max_retries} attempts")

            wait = rate_limit_delay(attempt, rng=rng)
            logger.warning(f"⚠️ HTTP 429 - Attempt {attempt}/{max_retries} → waiting {wait:.1f}s")
            await sleep(wait)
            attempt += 1
            continue

        if attempt > 1:
            logger.success(f"✓ Recovered after {attempt - 1} retries")
        return result


def classify_error(error: Exception) -> ErrorType:
    """Classify error for appropriate handling"""
    if isinstance(error, NodeBannedError):
        return ErrorType.AUTH_FAILURE
    elif isinstance(error, RateLimitError):
        return ErrorType.RATE_LIMIT
    elif isinstance(error, httpx.HTTPStatusError):
        if error.response.status_code == 403:
            return ErrorType.AUTH_FAILURE
        elif error.response.status_code == 429:
            return ErrorType.RATE_LIMIT
        elif error.response.status_code >= 500:
            return ErrorType.TRANSIENT
        else:
            return ErrorType.PERMANENT
    elif isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return ErrorType.TRANSIENT
    else:
        return ErrorType.PERMANENT
