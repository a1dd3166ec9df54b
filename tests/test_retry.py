"""Tests for the Retry Controller: termination, backoff, overrides, cancellation."""

from __future__ import annotations

import asyncio
import random

import pytest

from genrelay.gateway.errors import ClassifiedError, ErrorClassifier
from genrelay.gateway.retry import RetryController
from genrelay.gateway.types import BackoffKind, ErrorCategory, RetryContext, RetryPolicy


class _StatusError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


@pytest.fixture
def retry(clock):
    return RetryController(
        RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0),
        ErrorClassifier(),
        sleep=clock.sleep,
        rng=random.Random(42),
    )


class TestRetryExecute:
    @pytest.mark.asyncio
    async def test_success_first_try(self, retry, clock):
        async def work():
            return "ok"

        assert await retry.execute(work, RetryContext(operation="embed")) == "ok"
        assert clock.sleeps == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_attempts", [1, 2, 4])
    async def test_always_failing_retryable_runs_exactly_k_times(self, clock, max_attempts):
        retry = RetryController(RetryPolicy(max_attempts=max_attempts), sleep=clock.sleep)
        calls = 0
        raised: list[Exception] = []

        async def work():
            nonlocal calls
            calls += 1
            error = ConnectionError(f"connection reset #{calls}")
            raised.append(error)
            raise error

        with pytest.raises(ClassifiedError) as exc_info:
            await retry.execute(work, RetryContext(backend_id="b", operation="generate_text"))

        assert calls == max_attempts
        assert len(clock.sleeps) == max_attempts - 1
        error = exc_info.value
        assert error.category == ErrorCategory.NETWORK
        assert error.attempt == max_attempts
        assert error.__cause__ is raised[-1]
        assert error.backend_id == "b"

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, retry, clock):
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise _StatusError(503)
            return "recovered"

        assert await retry.execute(work) == "recovered"
        assert calls == 3
        assert len(clock.sleeps) == 2

    @pytest.mark.asyncio
    async def test_terminal_error_not_retried(self, retry):
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            raise _StatusError(401)

        with pytest.raises(ClassifiedError) as exc_info:
            await retry.execute(work)

        assert calls == 1
        assert exc_info.value.category == ErrorCategory.AUTHENTICATION
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_should_retry_overrides_classifier(self, retry):
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            raise _StatusError(401)

        with pytest.raises(ClassifiedError):
            await retry.execute(work, should_retry=lambda e: True)
        assert calls == 3

    @pytest.mark.asyncio
    async def test_should_retry_can_stop_retryable_errors(self, retry):
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            raise _StatusError(503)

        with pytest.raises(ClassifiedError):
            await retry.execute(work, should_retry=lambda e: False)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_on_retry_called_for_every_failed_attempt(self, retry):
        seen: list[tuple[str, int]] = []

        async def work():
            raise TimeoutError("timed out")

        with pytest.raises(ClassifiedError):
            await retry.execute(work, on_retry=lambda e, n: seen.append((e.category.value, n)))

        assert seen == [("timeout", 1), ("timeout", 2), ("timeout", 3)]

    @pytest.mark.asyncio
    async def test_on_retry_skips_terminal_errors(self, retry):
        seen: list[int] = []

        async def work():
            raise _StatusError(401)

        with pytest.raises(ClassifiedError):
            await retry.execute(work, on_retry=lambda e, n: seen.append(n))
        assert seen == []

    @pytest.mark.asyncio
    async def test_async_on_retry_is_awaited(self, retry):
        seen: list[int] = []

        async def on_retry(error, attempt):
            seen.append(attempt)

        async def work():
            raise _StatusError(429)

        with pytest.raises(ClassifiedError):
            await retry.execute(work, on_retry=on_retry)
        assert seen == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_policy_override(self, retry):
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            raise _StatusError(500)

        with pytest.raises(ClassifiedError):
            await retry.execute(work, policy=RetryPolicy(max_attempts=5, base_delay=0.1, max_delay=1.0))
        assert calls == 5

    @pytest.mark.asyncio
    async def test_cancellation_during_backoff(self):
        retry = RetryController(RetryPolicy(max_attempts=5, base_delay=60.0, max_delay=60.0))
        calls = 0

        async def work():
            nonlocal calls
            calls += 1
            raise _StatusError(503)

        task = asyncio.create_task(retry.execute(work))
        for _ in range(5):
            await asyncio.sleep(0)
        assert calls == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert calls == 1


class TestBackoff:
    def test_exponential(self, retry):
        for _ in range(20):
            delay = retry.compute_delay(3)
            assert 4.0 * 0.8 <= delay <= 4.0 * 1.2

    def test_exponential_capped(self, retry):
        for _ in range(20):
            delay = retry.compute_delay(10)
            assert 30.0 * 0.8 <= delay <= 30.0 * 1.2

    def test_linear(self, retry):
        policy = RetryPolicy(base_delay=2.0, max_delay=5.0, backoff=BackoffKind.LINEAR)
        assert 4.0 * 0.8 <= retry.compute_delay(2, policy) <= 4.0 * 1.2
        assert 5.0 * 0.8 <= retry.compute_delay(4, policy) <= 5.0 * 1.2

    def test_fixed(self, retry):
        policy = RetryPolicy(base_delay=2.0, max_delay=5.0, backoff=BackoffKind.FIXED)
        for attempt in (1, 2, 7):
            assert 1.6 <= retry.compute_delay(attempt, policy) <= 2.4

    def test_jitter_varies(self, retry):
        delays = {retry.compute_delay(1) for _ in range(10)}
        assert len(delays) > 1

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=10.0, max_delay=1.0)
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestRetryHelpers:
    @pytest.mark.asyncio
    async def test_wrap(self, retry):
        calls = 0

        async def flaky(x, y=1):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("reset")
            return x + y

        wrapped = retry.wrap(flaky)
        assert await wrapped(2, y=3) == 5
        assert calls == 2
        assert wrapped.__name__ == "flaky"

    def test_retry_advice_rate_limit(self, retry):
        advice = retry.retry_advice(_StatusError(429))
        assert advice == {
            "retryable": True,
            "category": "rate-limit",
            "suggested_delay": 2.0,
            "max_attempts": 3,
        }

    def test_retry_advice_terminal(self, retry):
        advice = retry.retry_advice(_StatusError(403))
        assert advice["retryable"] is False
        assert advice["suggested_delay"] == 0.0
        assert advice["max_attempts"] == 1
