"""
Shared rate gate with exponential backoff for outbound lookups.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from app.scraper.config.models import ScraperSettings
from app.scraper.errors import LookupTransientError, NonRetryableError, RetryExhaustedError
from app.scraper.logging_utils import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    LookupTransientError,
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff capped at max_seconds.
    """

    initial_seconds: float = 1.0
    multiplier: float = 2.0
    max_seconds: float = 30.0

    def delay_for(self, failures: int) -> float:
        """
        Seconds to wait after the given number of consecutive failures (1-based).
        Non-decreasing in ``failures`` and never above ``max_seconds``.
        """

        if failures <= 0:
            return 0.0
        delay = self.initial_seconds * (self.multiplier ** (failures - 1))
        return min(delay, self.max_seconds)

    @classmethod
    def from_settings(cls, settings: ScraperSettings) -> "BackoffPolicy":
        return cls(
            initial_seconds=settings.backoff_initial_seconds,
            multiplier=settings.backoff_multiplier,
            max_seconds=settings.backoff_max_seconds,
        )


class RateLimiter:
    """
    Releases scheduled operations no faster than ``rate_per_second``.

    Every attempt, retries included, passes through one shared gate, so the
    aggregate request rate holds however many lanes call ``schedule``. Backoff
    sleeps happen outside the gate and never block other callers.
    """

    def __init__(
        self,
        *,
        rate_per_second: float = 1.0,
        max_attempts: int = 3,
        backoff: BackoffPolicy | None = None,
        retry_on: tuple[type[BaseException], ...] = DEFAULT_RETRYABLE_ERRORS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._min_interval = 1.0 / max(0.001, rate_per_second)
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff or BackoffPolicy()
        self._retry_on = retry_on
        self._sleep = sleep
        self._clock = clock
        self._gate = asyncio.Lock()
        self._next_slot: float | None = None
        self._pending = 0

    @classmethod
    def from_settings(cls, settings: ScraperSettings) -> "RateLimiter":
        return cls(
            rate_per_second=settings.lookup_rate_per_second,
            max_attempts=settings.lookup_max_attempts,
            backoff=BackoffPolicy.from_settings(settings),
        )

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    @property
    def min_interval(self) -> float:
        return self._min_interval

    @property
    def pending(self) -> int:
        return self._pending

    async def _acquire_slot(self) -> None:
        async with self._gate:
            now = self._clock()
            if self._next_slot is not None and self._next_slot > now:
                await self._sleep(self._next_slot - now)
                now = self._clock()
            self._next_slot = max(now, self._next_slot or now) + self._min_interval

    async def schedule(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str = "operation",
    ) -> T:
        """
        Run ``operation`` through the shared gate, retrying retryable failures.

        Raises NonRetryableError for errors outside ``retry_on`` and
        RetryExhaustedError once ``max_attempts`` attempts have failed.
        """

        self._pending += 1
        try:
            attempt = 0
            while True:
                attempt += 1
                await self._acquire_slot()
                try:
                    return await operation()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if not isinstance(exc, self._retry_on):
                        log_event(
                            logger,
                            logging.WARNING,
                            "rate_limited_operation_rejected",
                            label=label,
                            attempt=attempt,
                            error=str(exc),
                        )
                        raise NonRetryableError(
                            f"{label} failed with a non-retryable error: {exc}",
                            attempts=attempt,
                            last_error=exc,
                        ) from exc
                    if attempt >= self._max_attempts:
                        log_event(
                            logger,
                            logging.WARNING,
                            "rate_limited_operation_exhausted",
                            label=label,
                            attempts=attempt,
                            error=str(exc),
                        )
                        raise RetryExhaustedError(
                            f"{label} failed after {attempt} attempts: {exc}",
                            attempts=attempt,
                            last_error=exc,
                        ) from exc
                    delay = self._backoff.delay_for(attempt)
                    log_event(
                        logger,
                        logging.INFO,
                        "rate_limited_operation_retry",
                        label=label,
                        attempt=attempt,
                        delay_seconds=delay,
                        error=str(exc),
                    )
                    await self._sleep(delay)
        finally:
            self._pending -= 1
