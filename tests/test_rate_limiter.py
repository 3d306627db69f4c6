"""
tests/test_rate_limiter.py

RateLimiter and BackoffPolicy against a fake clock. No real sleeping.
"""

from __future__ import annotations

import asyncio

import pytest

from app.scraper.config.models import ScraperSettings
from app.scraper.errors import LookupTransientError, NonRetryableError, RetryExhaustedError
from app.scraper.rate_limiter import BackoffPolicy, RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(round(seconds, 6))
        self.now += seconds


def _limiter(clock: FakeClock, **kwargs) -> RateLimiter:
    kwargs.setdefault("backoff", BackoffPolicy(initial_seconds=1.0, multiplier=2.0, max_seconds=30.0))
    return RateLimiter(sleep=clock.sleep, clock=clock, **kwargs)


# ---------------------------------------------------------------------------
# BackoffPolicy
# ---------------------------------------------------------------------------


class TestBackoffPolicy:
    def test_exponential_growth(self) -> None:
        policy = BackoffPolicy(initial_seconds=1.0, multiplier=2.0, max_seconds=30.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max(self) -> None:
        policy = BackoffPolicy(initial_seconds=1.0, multiplier=2.0, max_seconds=5.0)
        assert policy.delay_for(10) == 5.0

    def test_non_positive_failures_mean_no_delay(self) -> None:
        assert BackoffPolicy().delay_for(0) == 0.0

    def test_non_decreasing(self) -> None:
        policy = BackoffPolicy(initial_seconds=0.5, multiplier=3.0, max_seconds=20.0)
        delays = [policy.delay_for(n) for n in range(1, 12)]
        assert delays == sorted(delays)

    def test_from_settings(self) -> None:
        settings = ScraperSettings(
            backoff_initial_seconds=2.0,
            backoff_multiplier=3.0,
            backoff_max_seconds=9.0,
        )
        policy = BackoffPolicy.from_settings(settings)
        assert (policy.initial_seconds, policy.multiplier, policy.max_seconds) == (2.0, 3.0, 9.0)


# ---------------------------------------------------------------------------
# Pacing
# ---------------------------------------------------------------------------


class TestPacing:
    @pytest.mark.asyncio
    async def test_sequential_calls_are_spaced(self) -> None:
        clock = FakeClock()
        limiter = _limiter(clock, rate_per_second=2.0)

        async def operation() -> str:
            return "ok"

        for _ in range(3):
            assert await limiter.schedule(operation) == "ok"
        assert clock.sleeps == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_gate(self) -> None:
        clock = FakeClock()
        limiter = _limiter(clock, rate_per_second=2.0)
        started_at: list[float] = []

        async def operation() -> None:
            started_at.append(clock.now)

        await asyncio.gather(*(limiter.schedule(operation) for _ in range(4)))
        assert started_at == [0.0, 0.5, 1.0, 1.5]

    @pytest.mark.asyncio
    async def test_idle_gap_is_not_banked(self) -> None:
        clock = FakeClock()
        limiter = _limiter(clock, rate_per_second=1.0)

        async def operation() -> None:
            return None

        await limiter.schedule(operation)
        clock.now += 10.0
        await limiter.schedule(operation)
        await limiter.schedule(operation)
        assert clock.sleeps == [1.0]

    def test_min_interval(self) -> None:
        assert RateLimiter(rate_per_second=4.0).min_interval == 0.25


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_with_backoff(self) -> None:
        clock = FakeClock()
        limiter = _limiter(clock, rate_per_second=1000.0, max_attempts=3)
        attempts = 0

        async def flaky() -> str:
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise LookupTransientError("HTTP 503")
            return "Telkom"

        assert await limiter.schedule(flaky) == "Telkom"
        assert attempts == 3
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted(self) -> None:
        clock = FakeClock()
        limiter = _limiter(clock, rate_per_second=1000.0, max_attempts=2)

        async def always_down() -> None:
            raise TimeoutError("read timed out")

        with pytest.raises(RetryExhaustedError) as excinfo:
            await limiter.schedule(always_down, label="lookup")
        assert excinfo.value.attempts == 2
        assert isinstance(excinfo.value.last_error, TimeoutError)
        assert "lookup" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_non_retryable_fails_immediately(self) -> None:
        clock = FakeClock()
        limiter = _limiter(clock, rate_per_second=1000.0, max_attempts=5)
        calls = 0

        async def broken() -> None:
            nonlocal calls
            calls += 1
            raise ValueError("unparseable page")

        with pytest.raises(NonRetryableError) as excinfo:
            await limiter.schedule(broken)
        assert calls == 1
        assert excinfo.value.attempts == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_pending_counter_returns_to_zero(self) -> None:
        clock = FakeClock()
        limiter = _limiter(clock, rate_per_second=1000.0, max_attempts=1)

        async def broken() -> None:
            raise LookupTransientError("down")

        with pytest.raises(RetryExhaustedError):
            await limiter.schedule(broken)
        assert limiter.pending == 0
