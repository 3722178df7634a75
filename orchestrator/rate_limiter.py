"""Token bucket rate limiter for the upstream script generation service.

Callers await acquire() before each upstream request. When the bucket is
empty they wait in a priority queue (higher priority first, FIFO within a
priority) that a background refill loop drains once tokens come back.

Refill Rule:
    Every refill_check_interval seconds, floor(elapsed / interval) *
    tokens_per_interval tokens are added, capped at max_tokens.

Server Feedback:
    update_from_headers() overwrites the local token count with the
    upstream's remaining budget and shifts the refill clock so the next
    refill lines up with the upstream reset time.

State is process-local: a restarted process starts with a full bucket.
"""

import asyncio
import heapq
import itertools
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from orchestrator.config import get_upstream_rate_limit_per_minute
from orchestrator.exceptions import RateLimiterClearedError, RateLimitQueueFullError
from orchestrator.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class RateLimitStats:
    """Snapshot returned by RateLimiter.get_stats()."""

    tokens_remaining: int
    max_tokens: int
    queue_size: int
    total_requests: int
    throttled_requests: int
    average_wait_time: float
    last_refill: float


@dataclass
class _Waiter:
    future: asyncio.Future[None]
    enqueued_at: float
    tag: str | None


class RateLimiter:
    """Priority-aware token bucket.

    Args:
        tokens_per_interval: Tokens added per elapsed interval.
        interval: Refill interval in seconds.
        max_tokens: Bucket capacity (burst size).
        refill_check_interval: Seconds between background refill passes.
        max_queue_size: Maximum waiting callers (None = unbounded).
        clock: Wall clock in epoch seconds (injectable for tests).
    """

    def __init__(
        self,
        tokens_per_interval: int,
        interval: float,
        max_tokens: int,
        refill_check_interval: float = 1.0,
        max_queue_size: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if tokens_per_interval < 1 or max_tokens < 1 or interval <= 0:
            raise ValueError("tokens_per_interval, interval and max_tokens must be positive")

        self.tokens_per_interval = tokens_per_interval
        self.interval = interval
        self.max_tokens = max_tokens
        self.refill_check_interval = refill_check_interval
        self.max_queue_size = max_queue_size
        self._clock = clock

        self._tokens = max_tokens
        self._last_refill = clock()
        self._waiters: list[tuple[int, int, _Waiter]] = []
        self._sequence = itertools.count()
        self._refill_task: asyncio.Task[None] | None = None
        self._closed = False
        self._reset_stats()

    def _reset_stats(self) -> None:
        self._total_requests = 0
        self._throttled_requests = 0
        self._total_wait_time = 0.0
        self._completed_waits = 0

    @property
    def tokens(self) -> int:
        return self._tokens

    @property
    def queue_size(self) -> int:
        return sum(1 for _, _, waiter in self._waiters if not waiter.future.done())

    async def acquire(self, priority: int = 1, tag: str | None = None) -> None:
        """Take one token, waiting in priority order if none is available.

        Args:
            priority: Higher values are served first (default 1).
            tag: Optional label for logs (e.g., the endpoint name).

        Raises:
            RateLimitQueueFullError: If max_queue_size callers are already waiting.
            RateLimiterClearedError: If clear_queue() or reset() runs while waiting.
        """
        self._total_requests += 1

        # Queued callers keep their place: a newcomer only skips the wait
        # when nobody is waiting.
        if self.queue_size == 0 and self._try_acquire_token():
            return

        if self.max_queue_size is not None and self.queue_size >= self.max_queue_size:
            log.warning(
                "rate_limit_queue_full",
                queue_size=self.queue_size,
                max_queue_size=self.max_queue_size,
                tag=tag,
            )
            raise RateLimitQueueFullError(
                f"Rate limiter queue is full ({self.max_queue_size} waiting)"
            )

        self._throttled_requests += 1
        waiter = _Waiter(
            future=asyncio.get_running_loop().create_future(),
            enqueued_at=self._clock(),
            tag=tag,
        )
        heapq.heappush(self._waiters, (-priority, next(self._sequence), waiter))
        log.debug("rate_limit_throttled", priority=priority, tag=tag, queue_size=self.queue_size)
        self._ensure_refill_loop()

        try:
            await waiter.future
        except asyncio.CancelledError:
            if waiter.future.done() and not waiter.future.cancelled():
                # Token was handed over but the caller never resumed.
                self._tokens = min(self.max_tokens, self._tokens + 1)
            self._discard(waiter)
            raise

    def _try_acquire_token(self) -> bool:
        self._refill()
        if self._tokens > 0:
            self._tokens -= 1
            return True
        return False

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed >= self.interval:
            tokens_to_add = math.floor(elapsed / self.interval) * self.tokens_per_interval
            self._tokens = min(self.max_tokens, self._tokens + tokens_to_add)
            self._last_refill = now

    def process_queue(self) -> int:
        """Refill, then hand tokens to waiters in priority order.

        Returns:
            Number of waiters released.
        """
        released = 0
        while self._waiters:
            _, _, waiter = self._waiters[0]
            if waiter.future.done():
                heapq.heappop(self._waiters)
                continue
            if not self._try_acquire_token():
                break
            heapq.heappop(self._waiters)
            self._total_wait_time += self._clock() - waiter.enqueued_at
            self._completed_waits += 1
            waiter.future.set_result(None)
            released += 1
        return released

    def _discard(self, waiter: _Waiter) -> None:
        self._waiters = [entry for entry in self._waiters if entry[2] is not waiter]
        heapq.heapify(self._waiters)

    def _ensure_refill_loop(self) -> None:
        if self._closed:
            return
        if self._refill_task is None or self._refill_task.done():
            self._refill_task = asyncio.get_running_loop().create_task(self._refill_loop())

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refill_check_interval)
            self.process_queue()

    def start(self) -> None:
        """Start the background refill loop (also started lazily by acquire)."""
        self._closed = False
        self._ensure_refill_loop()

    async def close(self) -> None:
        """Stop the refill loop and reject every waiting caller."""
        self._closed = True
        task, self._refill_task = self._refill_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear_queue()

    def update_from_headers(self, remaining: int | None, reset_epoch: float | None) -> None:
        """Align local state with the upstream's rate limit headers.

        Args:
            remaining: Requests the upstream still allows in its window.
            reset_epoch: Epoch seconds at which the upstream window resets.
        """
        if remaining is not None:
            self._tokens = max(0, min(int(remaining), self.max_tokens))

        if reset_epoch is not None:
            now = self._clock()
            if reset_epoch > now:
                self._last_refill = now - (self.interval - (reset_epoch - now))

        log.debug(
            "rate_limit_synced_from_headers",
            remaining=remaining,
            reset_epoch=reset_epoch,
            tokens=self._tokens,
        )

    def update_from_response_headers(self, headers: Mapping[str, str]) -> None:
        """Parse x-ratelimit-remaining / x-ratelimit-reset and apply them.

        Unparseable values are ignored.
        """
        remaining = _parse_number(headers.get("x-ratelimit-remaining"))
        reset = _parse_number(headers.get("x-ratelimit-reset"))
        if remaining is None and reset is None:
            return
        self.update_from_headers(
            int(remaining) if remaining is not None else None,
            reset,
        )

    def get_stats(self) -> RateLimitStats:
        self._refill()
        return RateLimitStats(
            tokens_remaining=self._tokens,
            max_tokens=self.max_tokens,
            queue_size=self.queue_size,
            total_requests=self._total_requests,
            throttled_requests=self._throttled_requests,
            average_wait_time=(
                self._total_wait_time / self._completed_waits if self._completed_waits else 0.0
            ),
            last_refill=self._last_refill,
        )

    def clear_queue(self) -> int:
        """Fail every waiting caller with RateLimiterClearedError.

        Returns:
            Number of callers rejected.
        """
        rejected = 0
        waiters, self._waiters = self._waiters, []
        for _, _, waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(RateLimiterClearedError())
                rejected += 1
        if rejected:
            log.warning("rate_limit_queue_cleared", rejected=rejected)
        return rejected

    def reset(self) -> None:
        """Refill the bucket, reject waiters and zero the statistics."""
        self._tokens = self.max_tokens
        self._last_refill = self._clock()
        self.clear_queue()
        self._reset_stats()


def _parse_number(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def create_upstream_rate_limiter(requests_per_minute: int | None = None) -> RateLimiter:
    """Create the limiter guarding the script generation service.

    60 requests per minute = 1 token per second with a burst of 60.
    """
    rpm = requests_per_minute or get_upstream_rate_limit_per_minute()
    return RateLimiter(tokens_per_interval=1, interval=60.0 / rpm, max_tokens=rpm)
