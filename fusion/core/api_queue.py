"""
Priority execution queue for identity platform calls.

Every outbound request is wrapped in a QueueTask and dispatched by a single
scheduler loop that respects:
- priority (higher first, FIFO within a level)
- a requests-per-second budget (token bucket)
- a maximum number of in-flight calls (semaphore)
- an optional per-call timeout
- retry with backoff for transient failures

Callers simply await enqueue(); the result or the final error is delivered
through an asyncio.Future, so a failing task never takes the queue down.
"""

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from fusion.core.api_errors import APIError, RequestTimeoutError
from fusion.core.rate_limiter import RateLimiter
from fusion.core.retry_service import (
    BASE_RETRY_DELAY,
    DEFAULT_MAX_RETRIES,
    MAX_RETRY_DELAY,
    calculate_retry_delay,
    should_retry,
)

logger = logging.getLogger(__name__)

DEFAULT_REQUESTS_PER_SECOND = 10.0
STATS_LOGGING_INTERVAL = 30.0  # seconds
MAX_STATS_SAMPLES = 1000


class QueuePriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    URGENT = 3


@dataclass
class QueueTask:
    """A unit of deferred remote work, owned by the queue until resolved."""

    func: Callable[[], Awaitable[Any]]
    future: "asyncio.Future[Any]"
    priority: QueuePriority = QueuePriority.NORMAL
    max_retries: int = DEFAULT_MAX_RETRIES
    timeout: Optional[float] = None
    context: str = ""
    retry_count: int = 0
    created_at: float = field(default_factory=time.monotonic)
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class QueueStats:
    """Point-in-time snapshot of queue activity."""

    total_processed: int = 0
    total_failed: int = 0
    total_retried: int = 0
    queue_length: int = 0
    active_requests: int = 0
    average_wait_time: float = 0.0
    average_processing_time: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "total_failed": self.total_failed,
            "total_retried": self.total_retried,
            "queue_length": self.queue_length,
            "active_requests": self.active_requests,
            "average_wait_time": round(self.average_wait_time, 4),
            "average_processing_time": round(self.average_processing_time, 4),
        }


class ApiExecutionQueue:
    """
    Bounded-concurrency, rate-limited, priority-aware task runner.

    Usage:
        async with ApiExecutionQueue(requests_per_second=10) as queue:
            accounts = await queue.enqueue(
                lambda: client.list_accounts(offset=0, limit=250),
                priority=QueuePriority.HIGH,
                context="listAccounts",
            )
    """

    def __init__(
        self,
        requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
        max_concurrent_requests: Optional[int] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        request_timeout: Optional[float] = None,
        enable_retry: bool = True,
        base_retry_delay: float = BASE_RETRY_DELAY,
        max_retry_delay: float = MAX_RETRY_DELAY,
        stats_interval: float = STATS_LOGGING_INTERVAL,
    ):
        if max_concurrent_requests is None:
            max_concurrent_requests = max(10, int(requests_per_second * 2))
        if max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")

        self.requests_per_second = requests_per_second
        self.max_concurrent_requests = max_concurrent_requests
        self.max_retries = max_retries
        self.request_timeout = request_timeout
        self.enable_retry = enable_retry
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay
        self.stats_interval = stats_interval

        self._heap: List[Tuple[int, int, QueueTask]] = []
        self._sequence = itertools.count()
        self._limiter = RateLimiter(requests_per_second)
        self._slots: Optional[asyncio.Semaphore] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._scheduler_task: Optional["asyncio.Task[None]"] = None
        self._stats_task: Optional["asyncio.Task[None]"] = None
        self._background: Set["asyncio.Task[Any]"] = set()
        self._retry_waits: Set["asyncio.Task[Any]"] = set()
        self._closed = False

        self._active = 0
        self._processed = 0
        self._failed = 0
        self._retried = 0
        self._wait_times: Deque[float] = deque(maxlen=MAX_STATS_SAMPLES)
        self._processing_times: Deque[float] = deque(maxlen=MAX_STATS_SAMPLES)

    # =========================================================================
    # Public API
    # =========================================================================

    async def enqueue(
        self,
        func: Callable[[], Awaitable[Any]],
        priority: QueuePriority = QueuePriority.NORMAL,
        context: str = "",
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> Any:
        """
        Queue a call and wait for its outcome.

        Args:
            func: Zero-argument callable returning an awaitable (called once
                per attempt)
            priority: Dispatch priority
            context: Operation name used in logs and errors
            timeout: Per-call timeout in seconds (defaults to request_timeout)
            max_retries: Retry budget (defaults to the queue's max_retries)

        Returns:
            The call's result

        Raises:
            Exception: The final error once the retry budget is exhausted
        """
        return await self.submit(func, priority, context, timeout, max_retries)

    def submit(
        self,
        func: Callable[[], Awaitable[Any]],
        priority: QueuePriority = QueuePriority.NORMAL,
        context: str = "",
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> "asyncio.Future[Any]":
        """Queue a call and return a future for its outcome without waiting."""
        if self._closed:
            raise RuntimeError("ApiExecutionQueue is closed")
        self._ensure_started()

        future = asyncio.get_running_loop().create_future()
        task = QueueTask(
            func=func,
            future=future,
            priority=QueuePriority(priority),
            max_retries=self.max_retries if max_retries is None else max_retries,
            timeout=self.request_timeout if timeout is None else timeout,
            context=context,
        )
        self._push(task)
        return future

    def get_stats(self) -> QueueStats:
        return QueueStats(
            total_processed=self._processed,
            total_failed=self._failed,
            total_retried=self._retried,
            queue_length=len(self._heap),
            active_requests=self._active,
            average_wait_time=_mean(self._wait_times),
            average_processing_time=_mean(self._processing_times),
        )

    def clear(self) -> int:
        """
        Reject every task still waiting in the queue.

        In-flight calls are left to finish. Returns the number of tasks
        rejected.
        """
        pending = [task for _, _, task in self._heap]
        self._heap.clear()
        for task in pending:
            if not task.future.done():
                task.future.set_exception(
                    APIError("Queue cleared", source=task.context or None)
                )
        if pending:
            logger.info(f"Cleared {len(pending)} pending tasks from queue")
        return len(pending)

    async def close(self) -> None:
        """Stop the scheduler, reject pending tasks and wait for in-flight calls."""
        if self._closed:
            return
        self._closed = True
        self.clear()

        for task in (self._scheduler_task, self._stats_task):
            if task is not None:
                task.cancel()

        # Retries waiting on their backoff are cancelled; in-flight calls finish.
        for waiting in list(self._retry_waits):
            waiting.cancel()
        in_flight = list(self._background) + list(self._retry_waits)
        await asyncio.gather(
            *(t for t in (self._scheduler_task, self._stats_task) if t is not None),
            *in_flight,
            return_exceptions=True,
        )
        self._scheduler_task = None
        self._stats_task = None
        logger.debug(f"Queue closed: {self.get_stats().to_dict()}")

    async def __aenter__(self) -> "ApiExecutionQueue":
        self._ensure_started()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _ensure_started(self) -> None:
        if self._scheduler_task is not None:
            return
        self._slots = asyncio.Semaphore(self.max_concurrent_requests)
        self._wakeup = asyncio.Event()
        self._scheduler_task = asyncio.create_task(self._schedule())
        if self.stats_interval > 0:
            self._stats_task = asyncio.create_task(self._log_stats_periodically())

    def _push(self, task: QueueTask) -> None:
        task.enqueued_at = time.monotonic()
        heapq.heappush(self._heap, (-int(task.priority), next(self._sequence), task))
        self._wakeup.set()

    async def _schedule(self) -> None:
        while True:
            if not self._heap:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            await self._slots.acquire()
            await self._limiter.acquire()

            if not self._heap:
                # Cleared while we were waiting for capacity.
                self._slots.release()
                continue

            _, _, task = heapq.heappop(self._heap)
            if task.future.done():
                # Caller gave up (cancelled) before dispatch.
                self._slots.release()
                continue

            self._active += 1
            self._spawn(self._run(task))

    async def _run(self, task: QueueTask) -> None:
        started = time.monotonic()
        self._wait_times.append(started - task.enqueued_at)
        try:
            result = await self._call(task)
        except Exception as e:
            self._finish(started)
            self._handle_failure(task, e)
        else:
            self._finish(started)
            self._processed += 1
            if not task.future.done():
                task.future.set_result(result)

    async def _call(self, task: QueueTask) -> Any:
        if task.timeout is None:
            return await task.func()
        try:
            return await asyncio.wait_for(task.func(), timeout=task.timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"Request timed out after {task.timeout}s",
                source=task.context or None,
                timeout=task.timeout,
            )

    def _finish(self, started: float) -> None:
        self._processing_times.append(time.monotonic() - started)
        self._active -= 1
        self._slots.release()

    def _handle_failure(self, task: QueueTask, error: Exception) -> None:
        label = task.context or "task"
        if (
            self.enable_retry
            and not self._closed
            and task.retry_count < task.max_retries
            and should_retry(error)
        ):
            task.retry_count += 1
            self._retried += 1
            delay = calculate_retry_delay(
                task.retry_count,
                error,
                base_delay=self.base_retry_delay,
                max_delay=self.max_retry_delay,
            )
            logger.warning(
                f"{label} failed ({error}); retry {task.retry_count}/{task.max_retries} "
                f"in {delay:.2f}s"
            )
            self._spawn(self._requeue_after(task, delay), self._retry_waits)
            return

        self._failed += 1
        logger.debug(f"{label} failed after {task.retry_count} retries: {error}")
        if not task.future.done():
            task.future.set_exception(error)

    async def _requeue_after(self, task: QueueTask, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            if not task.future.done():
                task.future.set_exception(
                    APIError("Queue closed before retry", source=task.context or None)
                )
            raise
        if task.future.done():
            return
        if self._closed:
            task.future.set_exception(
                APIError("Queue closed before retry", source=task.context or None)
            )
            return
        self._push(task)

    def _spawn(self, coro: Awaitable[Any], registry: Optional[Set["asyncio.Task[Any]"]] = None) -> None:
        registry = self._background if registry is None else registry
        bg = asyncio.ensure_future(coro)
        registry.add(bg)
        bg.add_done_callback(registry.discard)

    async def _log_stats_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.stats_interval)
            if self._heap or self._active:
                logger.debug(f"API queue stats: {self.get_stats().to_dict()}")


def _mean(samples: Deque[float]) -> float:
    return sum(samples) / len(samples) if samples else 0.0
