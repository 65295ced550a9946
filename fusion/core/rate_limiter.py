"""
Token bucket rate limiter for platform requests.

Tokens are added at requests_per_second up to burst_capacity; every
dispatched request consumes one. With the default burst of one token
requests are spaced evenly rather than sent in bursts.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.

    Tokens are added at a fixed rate (requests_per_second) up to a maximum
    (burst_capacity). Each request consumes one token.
    """

    requests_per_second: float
    burst_capacity: int = 1

    tokens: float = 0.0
    last_refill: float = field(default=0.0)

    total_requests: int = 0
    total_throttled: int = 0

    def __post_init__(self):
        if self.requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.tokens = float(self.burst_capacity)
        self.last_refill = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(
            float(self.burst_capacity), self.tokens + elapsed * self.requests_per_second
        )
        self.last_refill = now

    def try_acquire(self) -> bool:
        """
        Try to take a token.

        Returns:
            True if a token was consumed, False if rate limited
        """
        self._refill()
        if self.tokens < 1.0:
            self.total_throttled += 1
            return False
        self.tokens -= 1.0
        self.total_requests += 1
        return True

    def wait_time(self) -> float:
        """Seconds until the next token becomes available (0 if one is ready)."""
        self._refill()
        if self.tokens >= 1.0:
            return 0.0
        return (1.0 - self.tokens) / self.requests_per_second


class RateLimiter:
    """
    Async wrapper around a TokenBucket.

    acquire() suspends until a token is available. A lock serializes
    check-and-consume so concurrent waiters never overdraw the bucket.
    """

    def __init__(self, requests_per_second: float, burst_capacity: int = 1):
        self.bucket = TokenBucket(
            requests_per_second=requests_per_second, burst_capacity=burst_capacity
        )
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for a token.

        Args:
            timeout: Maximum seconds to wait; None waits indefinitely

        Returns:
            True if acquired, False if timed out
        """
        start = time.monotonic()
        while True:
            async with self._lock:
                if self.bucket.try_acquire():
                    return True
                wait = self.bucket.wait_time()

            if timeout is not None and time.monotonic() - start + wait > timeout:
                logger.warning(
                    f"Rate limiter timeout after {time.monotonic() - start:.1f}s"
                )
                return False

            await asyncio.sleep(wait)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "requests_per_second": self.bucket.requests_per_second,
            "burst_capacity": self.bucket.burst_capacity,
            "current_tokens": round(self.bucket.tokens, 2),
            "total_requests": self.bucket.total_requests,
            "total_throttled": self.bucket.total_throttled,
        }
