"""
Unit tests for fusion/core/api_queue.py

Covers priority ordering, the concurrency cap, rate-limit hints, per-call
timeouts, retry exhaustion and queue statistics. Delays are kept tiny so
the suite stays fast.
"""
import asyncio
import time

import pytest

from fusion.core.api_errors import (
    APIError,
    NotFoundError,
    RateLimitError,
    RequestTimeoutError,
    RetryableError,
)
from fusion.core.api_queue import ApiExecutionQueue, QueuePriority


def make_queue(**kwargs) -> ApiExecutionQueue:
    values = {
        "requests_per_second": 1000.0,
        "base_retry_delay": 0.001,
        "max_retry_delay": 0.01,
        "stats_interval": 0,
    }
    values.update(kwargs)
    return ApiExecutionQueue(**values)


class FlakyCall:
    """Fails with the given errors in turn, then returns a value."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0
        self.call_times = []

    async def __call__(self):
        self.calls += 1
        self.call_times.append(time.monotonic())
        if self.errors:
            raise self.errors.pop(0)
        return self.result


# =============================================================================
# Construction
# =============================================================================


class TestQueueDefaults:
    """Tests for queue defaults."""

    @pytest.mark.unit
    def test_default_concurrency_from_rate(self):
        assert ApiExecutionQueue(requests_per_second=3).max_concurrent_requests == 10
        assert ApiExecutionQueue(requests_per_second=20).max_concurrent_requests == 40

    @pytest.mark.unit
    def test_explicit_concurrency(self):
        assert ApiExecutionQueue(max_concurrent_requests=4).max_concurrent_requests == 4

    @pytest.mark.unit
    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            ApiExecutionQueue(max_concurrent_requests=0)

    @pytest.mark.unit
    def test_default_retry_budget(self):
        assert ApiExecutionQueue().max_retries == 20


# =============================================================================
# Ordering and concurrency
# =============================================================================


class TestDispatch:
    """Tests for dispatch order and limits."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_priority_order(self):
        order = []

        def call(name):
            async def _run():
                order.append(name)
                return name
            return _run

        async with make_queue(max_concurrent_requests=1) as queue:
            futures = [
                queue.submit(call("low"), QueuePriority.LOW),
                queue.submit(call("normal"), QueuePriority.NORMAL),
                queue.submit(call("urgent"), QueuePriority.URGENT),
                queue.submit(call("high"), QueuePriority.HIGH),
            ]
            await asyncio.gather(*futures)

        assert order == ["urgent", "high", "normal", "low"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fifo_within_priority(self):
        order = []

        def call(name):
            async def _run():
                order.append(name)
            return _run

        async with make_queue(max_concurrent_requests=1) as queue:
            await asyncio.gather(*(queue.submit(call(n)) for n in ["a", "b", "c"]))

        assert order == ["a", "b", "c"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        active = 0
        peak = 0

        async def call():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1

        async with make_queue(max_concurrent_requests=2) as queue:
            await asyncio.gather(*(queue.enqueue(call) for _ in range(6)))

        assert peak == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_result_delivered(self):
        async with make_queue() as queue:
            assert await queue.enqueue(FlakyCall(result=42)) == 42


# =============================================================================
# Failures and retries
# =============================================================================


class TestRetries:
    """Tests for retry handling."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_hint_delays_retry(self):
        call = FlakyCall(RateLimitError("slow down", retry_after=0.2))
        async with make_queue() as queue:
            assert await queue.enqueue(call, context="listAccounts") == "ok"

        assert call.calls == 2
        assert call.call_times[1] - call.call_times[0] >= 0.2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_then_success(self):
        call = FlakyCall(RetryableError("502"), RetryableError("503"))
        async with make_queue() as queue:
            assert await queue.enqueue(call) == "ok"
            assert queue.get_stats().total_retried == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_exhaustion(self):
        call = FlakyCall(*[RetryableError(f"fail {i}") for i in range(10)])
        async with make_queue(max_retries=2) as queue:
            with pytest.raises(RetryableError, match="fail 2"):
                await queue.enqueue(call)
            stats = queue.get_stats()

        assert call.calls == 3
        assert stats.total_retried == 2
        assert stats.total_failed == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_per_task_retry_budget(self):
        call = FlakyCall(RetryableError("a"), RetryableError("b"))
        async with make_queue() as queue:
            with pytest.raises(RetryableError):
                await queue.enqueue(call, max_retries=1)
        assert call.calls == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self):
        call = FlakyCall(NotFoundError(resource_id="x"))
        async with make_queue() as queue:
            with pytest.raises(NotFoundError):
                await queue.enqueue(call)
        assert call.calls == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_disabled(self):
        call = FlakyCall(RetryableError("503"))
        async with make_queue(enable_retry=False) as queue:
            with pytest.raises(RetryableError):
                await queue.enqueue(call)
        assert call.calls == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow():
            await asyncio.sleep(1)

        async with make_queue(request_timeout=0.05, max_retries=0) as queue:
            start = time.monotonic()
            with pytest.raises(RequestTimeoutError) as exc_info:
                await queue.enqueue(slow, context="getIdentity")

        assert time.monotonic() - start < 0.5
        assert exc_info.value.timeout == 0.05
        assert exc_info.value.source == "getIdentity"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_retried(self):
        attempts = 0

        async def slow_once():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                await asyncio.sleep(1)
            return "done"

        async with make_queue(request_timeout=0.05) as queue:
            assert await queue.enqueue(slow_once) == "done"
        assert attempts == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_task_does_not_stop_queue(self):
        async with make_queue() as queue:
            with pytest.raises(ValueError):
                await queue.enqueue(FlakyCall(ValueError("bug")))
            assert await queue.enqueue(FlakyCall(result="next")) == "next"


# =============================================================================
# Lifecycle and statistics
# =============================================================================


class TestLifecycle:
    """Tests for clear, close and stats."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clear_rejects_pending(self):
        gate = asyncio.Event()

        async def blocked():
            await gate.wait()
            return "first"

        async with make_queue(max_concurrent_requests=1) as queue:
            first = queue.submit(blocked)
            second = queue.submit(FlakyCall())
            await asyncio.sleep(0.01)

            assert queue.clear() == 1
            with pytest.raises(APIError, match="Queue cleared"):
                await second

            gate.set()
            assert await first == "first"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_submit_after_close(self):
        queue = make_queue()
        await queue.close()
        with pytest.raises(RuntimeError):
            queue.submit(FlakyCall())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_fails_waiting_retries(self):
        queue = make_queue(base_retry_delay=10, max_retry_delay=10)
        future = queue.submit(FlakyCall(RetryableError("503")))
        await asyncio.sleep(0.01)
        await queue.close()
        with pytest.raises(APIError, match="Queue closed before retry"):
            await future

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stats(self):
        async with make_queue() as queue:
            for _ in range(3):
                await queue.enqueue(FlakyCall())
            stats = queue.get_stats().to_dict()

        assert stats["total_processed"] == 3
        assert stats["total_failed"] == 0
        assert stats["queue_length"] == 0
        assert stats["active_requests"] == 0
        assert stats["average_processing_time"] >= 0
