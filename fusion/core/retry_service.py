"""
Retry policy for platform calls.

Decides whether a failed call is worth retrying and how long to wait before
the next attempt. Rate-limit failures carrying a server wait hint honor that
hint; everything else backs off exponentially with jitter.
"""

import asyncio
import logging
import random
from typing import Optional

import httpx

from fusion.core.api_errors import APIError, RateLimitError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 20
BASE_RETRY_DELAY = 1.0  # seconds
MAX_RETRY_DELAY = 60.0  # seconds
BACKOFF_MULTIPLIER = 2
RETRY_JITTER_FACTOR = 0.3  # up to +30% of the exponential delay
RATE_LIMIT_JITTER_FACTOR = 0.1  # up to +10% of the server wait hint


def should_retry(error: BaseException) -> bool:
    """
    Whether a failure is transient and the call should be retried.

    Retryable: network/transport failures, timeouts, HTTP 429 and 5xx.
    Everything else (4xx, programming errors) fails immediately.
    """
    if isinstance(error, APIError):
        return error.retryable
    return isinstance(error, (httpx.TransportError, asyncio.TimeoutError, ConnectionError))


def calculate_retry_delay(
    retry_count: int,
    error: Optional[BaseException] = None,
    base_delay: float = BASE_RETRY_DELAY,
    max_delay: float = MAX_RETRY_DELAY,
) -> float:
    """
    Calculate delay before the next attempt.

    Args:
        retry_count: Attempt number about to be made (1 for the first retry)
        error: The failure that triggered the retry
        base_delay: Base delay in seconds
        max_delay: Cap for exponential backoff, in seconds

    Returns:
        Delay in seconds
    """
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        hint = float(error.retry_after)
        return hint + random.random() * RATE_LIMIT_JITTER_FACTOR * hint

    exponential = base_delay * (BACKOFF_MULTIPLIER ** max(retry_count - 1, 0))
    jitter = random.random() * RETRY_JITTER_FACTOR * exponential
    return min(exponential + jitter, max_delay)
