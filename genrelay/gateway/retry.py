"""Retry Controller — bounded retries with backoff and jitter.

State machine per unit of work:
  Pending -> Executing -> Success
                       -> ClassifyFailure -> Retryable -> Backoff -> Executing
                                          -> Fatal -> Failed

Backoff (attempt is the 1-based number of the attempt that just failed):
  fixed        base
  linear       base * attempt
  exponential  base * 2^(attempt - 1)
  delay = min(raw, max_delay) * uniform(0.8, 1.2)

The last attempt's ClassifiedError is raised with the raw failure chained.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from genrelay.gateway.errors import ClassifiedError, ErrorClassifier
from genrelay.gateway.types import BackoffKind, ErrorCategory, RetryContext, RetryPolicy

T = TypeVar("T")

JITTER = 0.2

OnRetry = Callable[[ClassifiedError, int], Any]
ShouldRetry = Callable[[ClassifiedError], bool]


class RetryController:
    """Runs a unit of work until it succeeds, fails terminally, or runs out of attempts.

    Usage:
        retry = RetryController(RetryPolicy(max_attempts=3, base_delay=0.5))
        result = await retry.execute(
            lambda: adapter.embed("hello"),
            RetryContext(backend_id="openai", operation="embed"),
        )
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        classifier: ErrorClassifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.policy = policy or RetryPolicy()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int, policy: RetryPolicy | None = None) -> float:
        """Backoff delay in seconds after the given failed attempt (1-based)."""
        policy = policy or self.policy
        attempt = max(1, attempt)
        if policy.backoff == BackoffKind.FIXED:
            raw = policy.base_delay
        elif policy.backoff == BackoffKind.LINEAR:
            raw = policy.base_delay * attempt
        else:
            raw = policy.base_delay * (2 ** (attempt - 1))
        capped = min(raw, policy.max_delay)
        return capped * self._rng.uniform(1 - JITTER, 1 + JITTER)

    async def execute(
        self,
        unit_of_work: Callable[[], Awaitable[T]],
        context: RetryContext | None = None,
        policy: RetryPolicy | None = None,
        *,
        on_retry: OnRetry | None = None,
        should_retry: ShouldRetry | None = None,
    ) -> T:
        """Run ``unit_of_work`` under the retry policy.

        Args:
            unit_of_work: Zero-argument coroutine factory, invoked once per attempt
            context: Backend/operation identity; ``attempt`` is updated in place
            policy: Overrides the controller's default policy
            on_retry: Called with (error, attempt) for every retryable failure, the last included
            should_retry: Overrides the classifier's retryable flag

        Raises:
            ClassifiedError: The classification of the final failed attempt.
        """
        policy = policy or self.policy
        context = context or RetryContext()

        for attempt in range(1, policy.max_attempts + 1):
            context.attempt = attempt
            try:
                return await unit_of_work()
            except Exception as exc:
                classified = self.classifier.classify(exc, context)
                retryable = should_retry(classified) if should_retry is not None else classified.retryable
                if retryable and on_retry is not None:
                    outcome = on_retry(classified, attempt)
                    if inspect.isawaitable(outcome):
                        await outcome
                if not retryable or attempt >= policy.max_attempts:
                    if classified is exc:
                        raise
                    raise classified from exc

                await self._sleep(self.compute_delay(attempt, policy))

        # max_attempts >= 1 guarantees the loop returns or raises
        raise AssertionError("retry loop exited without a result")

    def wrap(
        self,
        fn: Callable[..., Awaitable[T]],
        context: RetryContext | None = None,
        policy: RetryPolicy | None = None,
    ) -> Callable[..., Awaitable[T]]:
        """Decorate an async function so every call runs under ``execute``."""

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs) -> T:
            call_context = RetryContext(
                backend_id=context.backend_id if context else "",
                operation=context.operation if context else fn.__name__,
                model=context.model if context else "",
                metadata=dict(context.metadata) if context else {},
            )
            return await self.execute(lambda: fn(*args, **kwargs), call_context, policy)

        return wrapper

    def retry_advice(self, error: BaseException, policy: RetryPolicy | None = None) -> dict:
        """Whether and when a failure is worth retrying.

        Rate-limit failures suggest twice the base delay.
        """
        policy = policy or self.policy
        classified = self.classifier.classify(error)
        if not classified.retryable:
            delay = 0.0
        elif classified.category == ErrorCategory.RATE_LIMIT:
            delay = min(policy.base_delay * 2, policy.max_delay)
        else:
            delay = policy.base_delay
        return {
            "retryable": classified.retryable,
            "category": classified.category.value,
            "suggested_delay": delay,
            "max_attempts": policy.max_attempts if classified.retryable else 1,
        }
