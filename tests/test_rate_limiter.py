"""
Unit tests for fusion/core/rate_limiter.py

All tests are fully offline.
"""
import asyncio
import time

import pytest

from fusion.core.rate_limiter import RateLimiter, TokenBucket


# =============================================================================
# Token Bucket
# =============================================================================


class TestTokenBucket:
    """Tests for TokenBucket."""

    @pytest.mark.unit
    def test_starts_full(self):
        bucket = TokenBucket(requests_per_second=2.0, burst_capacity=3)
        assert bucket.tokens == 3.0

    @pytest.mark.unit
    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            TokenBucket(requests_per_second=0)

    @pytest.mark.unit
    def test_acquire_until_empty(self):
        bucket = TokenBucket(requests_per_second=0.001, burst_capacity=2)
        assert bucket.try_acquire() is True
        assert bucket.try_acquire() is True
        assert bucket.try_acquire() is False
        assert bucket.total_requests == 2
        assert bucket.total_throttled == 1

    @pytest.mark.unit
    def test_wait_time(self):
        bucket = TokenBucket(requests_per_second=1.0)
        assert bucket.wait_time() == 0.0
        bucket.try_acquire()
        assert 0.0 < bucket.wait_time() <= 1.0

    @pytest.mark.unit
    def test_refill_capped_at_burst(self):
        bucket = TokenBucket(requests_per_second=1000.0, burst_capacity=2)
        bucket.try_acquire()
        time.sleep(0.01)
        bucket._refill()
        assert bucket.tokens == 2.0


# =============================================================================
# Async limiter
# =============================================================================


class TestRateLimiter:
    """Tests for the async RateLimiter."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_spaces_requests(self):
        limiter = RateLimiter(requests_per_second=20.0)
        start = time.monotonic()
        for _ in range(5):
            assert await limiter.acquire() is True
        # First token is immediate, the other four are 50ms apart
        assert time.monotonic() - start >= 0.18

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout(self):
        limiter = RateLimiter(requests_per_second=0.1)
        assert await limiter.acquire() is True
        assert await limiter.acquire(timeout=0.05) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_waiters_never_overdraw(self):
        limiter = RateLimiter(requests_per_second=50.0)
        start = time.monotonic()
        await asyncio.gather(*(limiter.acquire() for _ in range(6)))
        assert time.monotonic() - start >= 0.09
        assert limiter.get_stats()["total_requests"] == 6
