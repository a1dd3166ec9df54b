"""Admission Controller — per-backend rate limiting and concurrency gating.

Each registered backend gets its own limiter combining:
  - a request-rate strategy (exactly one active):
      sliding_window  minimum spacing of 60 / rpm seconds (leaky bucket drain)
      fixed_window    reservoir of rpm permits refilled every 60 seconds
      token_bucket    reservoir of rpm permits refilled continuously at rpm / 60 per second
  - a concurrency cap (max in-flight units of work)
  - a bounded priority queue, FIFO within the same priority
  - an optional token-budget gate (tokens per minute, fails closed)

All bookkeeping for one backend is mutated by that backend's drain task
or inside non-suspending sections, so concurrent ``schedule`` calls never
interleave partial updates.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from heapq import heappop, heappush
from typing import TypeVar

from genrelay.gateway.errors import AdmissionClosedError, AdmissionQueueFullError
from genrelay.gateway.types import RateLimitConfig, RateLimitStrategy, RequestPriority

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]
SleepFunc = Callable[[float], Awaitable[None]]

WINDOW_SECONDS = 60.0


# ---------------------------------------------------------------------------
# Request-rate strategies
# ---------------------------------------------------------------------------


class _RateStrategy(ABC):
    def __init__(self, requests_per_minute: int, now: float):
        self.rpm = requests_per_minute

    @abstractmethod
    def reserve(self, now: float) -> float:
        """Consume a permit and return 0, or return seconds until one may be free."""

    @abstractmethod
    def available(self, now: float) -> float:
        """Permits that could be granted right now."""


class _SlidingWindow(_RateStrategy):
    """Leaky bucket: dispatches are spaced at least 60 / rpm seconds apart."""

    def __init__(self, requests_per_minute: int, now: float):
        super().__init__(requests_per_minute, now)
        self.interval = WINDOW_SECONDS / requests_per_minute
        self._next_at: float | None = None

    def reserve(self, now: float) -> float:
        if self._next_at is None or now >= self._next_at:
            self._next_at = now + self.interval
            return 0.0
        return self._next_at - now

    def available(self, now: float) -> float:
        return 1.0 if self._next_at is None or now >= self._next_at else 0.0


class _FixedWindow(_RateStrategy):
    """Reservoir of rpm permits, refilled to full at each 60 second boundary."""

    def __init__(self, requests_per_minute: int, now: float):
        super().__init__(requests_per_minute, now)
        self._window_start = now
        self._permits = requests_per_minute

    def _roll(self, now: float) -> None:
        elapsed = now - self._window_start
        if elapsed >= WINDOW_SECONDS:
            self._window_start += math.floor(elapsed / WINDOW_SECONDS) * WINDOW_SECONDS
            self._permits = self.rpm

    def reserve(self, now: float) -> float:
        self._roll(now)
        if self._permits > 0:
            self._permits -= 1
            return 0.0
        return self._window_start + WINDOW_SECONDS - now

    def available(self, now: float) -> float:
        self._roll(now)
        return float(self._permits)


class _TokenBucket(_RateStrategy):
    """Reservoir of rpm permits refilled continuously at rpm / 60 per second."""

    def __init__(self, requests_per_minute: int, now: float):
        super().__init__(requests_per_minute, now)
        self.capacity = float(requests_per_minute)
        self.rate = requests_per_minute / WINDOW_SECONDS
        self._tokens = self.capacity
        self._last = now

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last = now

    def reserve(self, now: float) -> float:
        self._refill(now)
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0
        return (1.0 - self._tokens) / self.rate

    def available(self, now: float) -> float:
        self._refill(now)
        return math.floor(self._tokens)


_STRATEGIES: dict[RateLimitStrategy, type[_RateStrategy]] = {
    RateLimitStrategy.SLIDING_WINDOW: _SlidingWindow,
    RateLimitStrategy.FIXED_WINDOW: _FixedWindow,
    RateLimitStrategy.TOKEN_BUCKET: _TokenBucket,
}


# ---------------------------------------------------------------------------
# Token budget gate
# ---------------------------------------------------------------------------


class TokenBudget:
    """Token bucket over model tokens: capacity = tokens per minute, continuous refill."""

    def __init__(self, tokens_per_minute: int, now: float):
        self.capacity = float(tokens_per_minute)
        self.rate = tokens_per_minute / WINDOW_SECONDS
        self._tokens = self.capacity
        self._last = now

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last = now

    def consume(self, amount: int, now: float) -> bool:
        """Check and decrement in one step. No side effects on denial."""
        self._refill(now)
        if amount <= self._tokens:
            self._tokens -= amount
            return True
        return False

    def available(self, now: float) -> int:
        self._refill(now)
        return math.floor(self._tokens)


# ---------------------------------------------------------------------------
# Per-backend limiter
# ---------------------------------------------------------------------------


@dataclass(order=True)
class _Waiter:
    """Heap item: lower priority value first, then submission order."""

    priority: int
    sequence: int
    future: asyncio.Future = field(compare=False)


class _BackendLimiter:
    def __init__(self, backend_id: str, config: RateLimitConfig, clock: Clock, sleep: SleepFunc):
        self.backend_id = backend_id
        self.config = config
        self._clock = clock
        self._sleep = sleep
        now = clock()
        self.strategy = _STRATEGIES[config.strategy](config.requests_per_minute, now)
        self.budget = TokenBudget(config.tokens_per_minute, now) if config.tokens_per_minute is not None else None

        self._queue: list[_Waiter] = []
        self._sequence = 0
        self._running = 0
        self._done = 0
        self._failed = 0
        self._wakeup = asyncio.Event()
        self._drain_task: asyncio.Task | None = None
        self._closed = False

    @property
    def queued(self) -> int:
        return sum(1 for w in self._queue if not w.future.done())

    @property
    def running(self) -> int:
        return self._running

    async def acquire(self, priority: int) -> None:
        if self._closed:
            raise AdmissionClosedError(self.backend_id)
        if self.queued >= self.config.queue_limit:
            raise AdmissionQueueFullError(self.backend_id, self.config.queue_limit)

        future = asyncio.get_running_loop().create_future()
        self._sequence += 1
        heappush(self._queue, _Waiter(priority, self._sequence, future))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

        try:
            await future
        except asyncio.CancelledError:
            # Granted just before the caller was cancelled: hand the slot back
            if future.done() and not future.cancelled():
                self.release(failed=True)
            raise

    def release(self, failed: bool = False) -> None:
        self._running = max(0, self._running - 1)
        if failed:
            self._failed += 1
        else:
            self._done += 1
        self._wakeup.set()

    async def _drain(self) -> None:
        while True:
            while self._queue and self._queue[0].future.done():
                heappop(self._queue)
            if not self._queue:
                return

            if self._running >= self.config.concurrent:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            wait = self.strategy.reserve(self._clock())
            if wait > 0:
                await self._sleep(wait)
                continue

            waiter = heappop(self._queue)
            self._running += 1
            waiter.future.set_result(None)

    def close(self) -> int:
        """Reject everything still queued. Returns the number rejected."""
        self._closed = True
        rejected = 0
        for waiter in self._queue:
            if not waiter.future.done():
                waiter.future.set_exception(AdmissionClosedError(self.backend_id))
                rejected += 1
        self._queue.clear()
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        return rejected

    def stats(self) -> dict:
        now = self._clock()
        return {
            "backend_id": self.backend_id,
            "strategy": self.config.strategy.value,
            "running": self._running,
            "queued": self.queued,
            "done": self._done,
            "failed": self._failed,
            "max_concurrent": self.config.concurrent,
            "max_queue": self.config.queue_limit,
            "requests_per_minute": self.config.requests_per_minute,
            "available_permits": self.strategy.available(now),
            "token_budget": self.budget.available(now) if self.budget else None,
            "tokens_per_minute": self.config.tokens_per_minute,
        }


class AdmissionController:
    """Per-backend admission control.

    Usage:
        admission = AdmissionController()
        admission.register("openai", RateLimitConfig(requests_per_minute=60, tokens_per_minute=90_000))

        # Pre-flight token budget (fails closed, never blocks)
        if not admission.consume_token_budget("openai", 1200):
            ...  # try another backend

        # Run a unit of work once admitted
        result = await admission.schedule("openai", lambda: client.call(...))
    """

    def __init__(self, clock: Clock = time.monotonic, sleep: SleepFunc = asyncio.sleep):
        self._clock = clock
        self._sleep = sleep
        self._limiters: dict[str, _BackendLimiter] = {}

    def register(self, backend_id: str, config: RateLimitConfig | None = None) -> None:
        """Create or replace the limiter for a backend.

        Work already queued on a replaced limiter is still released by it.
        """
        config = config or RateLimitConfig()
        self._limiters[backend_id] = _BackendLimiter(backend_id, config, self._clock, self._sleep)
        logger.debug(
            "Registered %s limiter for %s (rpm=%d, concurrent=%d, tpm=%s)",
            config.strategy.value,
            backend_id,
            config.requests_per_minute,
            config.concurrent,
            config.tokens_per_minute,
        )

    def unregister(self, backend_id: str) -> int:
        """Remove a backend's limiter, rejecting its queued work."""
        limiter = self._limiters.pop(backend_id, None)
        if limiter is None:
            return 0
        return limiter.close()

    def clear_queue(self, backend_id: str) -> int:
        """Reject queued work but keep the backend registered with the same config."""
        limiter = self._get(backend_id)
        rejected = limiter.close()
        self.register(backend_id, limiter.config)
        return rejected

    def has(self, backend_id: str) -> bool:
        return backend_id in self._limiters

    def _get(self, backend_id: str) -> _BackendLimiter:
        try:
            return self._limiters[backend_id]
        except KeyError:
            raise KeyError(f"No admission limiter registered for backend: {backend_id}") from None

    @asynccontextmanager
    async def slot(
        self,
        backend_id: str,
        priority: RequestPriority | int | None = None,
    ) -> AsyncIterator[None]:
        """Hold one admitted slot for the duration of the block."""
        limiter = self._get(backend_id)
        await limiter.acquire(int(RequestPriority.NORMAL if priority is None else priority))
        try:
            yield
        except BaseException:
            limiter.release(failed=True)
            raise
        limiter.release()

    async def schedule(
        self,
        backend_id: str,
        unit_of_work: Callable[[], Awaitable[T]],
        priority: RequestPriority | int | None = None,
    ) -> T:
        """Run ``unit_of_work`` once the backend's limiter admits it."""
        async with self.slot(backend_id, priority):
            return await unit_of_work()

    def consume_token_budget(self, backend_id: str, amount: int) -> bool:
        """Pre-flight token budget check. Backends without a budget always grant."""
        limiter = self._limiters.get(backend_id)
        if limiter is None or limiter.budget is None:
            return True
        granted = limiter.budget.consume(amount, self._clock())
        if not granted:
            logger.info("Token budget denied %d tokens for %s", amount, backend_id)
        return granted

    def stats(self, backend_id: str) -> dict | None:
        limiter = self._limiters.get(backend_id)
        return limiter.stats() if limiter else None

    def all_stats(self) -> dict[str, dict]:
        return {backend_id: limiter.stats() for backend_id, limiter in self._limiters.items()}
