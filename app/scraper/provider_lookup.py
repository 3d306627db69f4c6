"""
Carrier resolution for scraped phone numbers.

Lookups go cache first; misses are paced through the shared RateLimiter and
written back before the caller sees the result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from typing import Protocol

import requests
from bs4 import BeautifulSoup

from app.scraper.carriers import (
    canonical_carrier,
    confidence_for,
    normalize_phone_number,
    parse_carrier_text,
)
from app.scraper.config.models import ScraperSettings
from app.scraper.errors import (
    LookupTransientError,
    ProviderCacheError,
    RateLimitedOperationError,
    ScrapeConfigError,
    ScraperError,
)
from app.scraper.logging_utils import log_event
from app.scraper.metrics import MetricsRecorder
from app.scraper.provider_cache import ProviderCache
from app.scraper.rate_limiter import RateLimiter
from app.scraper.types import CARRIER_UNKNOWN, BusinessCarrierResult, BusinessMatch, CarrierResult
from db.models.scraper_metric import MetricType

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

ProgressCallback = Callable[[int, int], None]


class CarrierLookupClient(Protocol):
    async def lookup(self, phone_number: str) -> str:
        """Return a carrier label for a normalized number."""


class BusinessSearch(Protocol):
    async def search(self, query: str) -> list[BusinessMatch]: ...


def parse_porting_page(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    node = soup.select_one("span.p1")
    if node is None:
        return CARRIER_UNKNOWN
    return parse_carrier_text(node.get_text(" ", strip=True))


class PortingLookupClient:
    """
    Queries the public number-portability database over HTTP.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        user_agent: str,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})

    @classmethod
    def from_settings(cls, settings: ScraperSettings) -> "PortingLookupClient":
        return cls(
            base_url=settings.lookup_url,
            timeout_seconds=settings.lookup_timeout_seconds,
            user_agent=settings.user_agent,
        )

    async def lookup(self, phone_number: str) -> str:
        return await asyncio.to_thread(self._lookup_sync, phone_number)

    def _lookup_sync(self, phone_number: str) -> str:
        try:
            response = self._session.get(
                self._base_url,
                params={"msisdn": phone_number},
                timeout=self._timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise LookupTransientError(f"Lookup request failed for {phone_number}: {exc}") from exc

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise LookupTransientError(
                f"Lookup for {phone_number} returned HTTP {response.status_code}"
            )
        response.raise_for_status()
        return parse_porting_page(response.text)


class ProviderLookupService:
    def __init__(
        self,
        *,
        client: CarrierLookupClient,
        cache: ProviderCache,
        rate_limiter: RateLimiter,
        metrics: MetricsRecorder | None = None,
        business_search: BusinessSearch | None = None,
    ) -> None:
        self._client = client
        self._business_search = business_search
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._metrics = metrics
        self._inflight: dict[str, asyncio.Task[CarrierResult]] = {}

    async def _cache_get(self, key: str) -> str | None:
        try:
            return await asyncio.to_thread(self._cache.get, key)
        except ProviderCacheError as exc:
            log_event(logger, logging.WARNING, "provider_cache_read_failed", phone=key, error=str(exc))
            return None

    async def _cache_set(self, key: str, carrier: str) -> None:
        try:
            await asyncio.to_thread(self._cache.set, key, carrier)
        except ProviderCacheError as exc:
            log_event(logger, logging.WARNING, "provider_cache_write_failed", phone=key, error=str(exc))

    async def identify_carrier(self, phone_number: str) -> CarrierResult:
        """
        Resolve one number. Raises RetryExhaustedError or NonRetryableError
        when the live lookup fails permanently; nothing is cached in that case.
        """

        key = normalize_phone_number(phone_number)
        if key is None:
            return CarrierResult(carrier=CARRIER_UNKNOWN, confidence=0.0)

        cached = await self._cache_get(key)
        if cached is not None:
            return CarrierResult(carrier=cached, confidence=confidence_for(cached), from_cache=True)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._lookup_and_store(key))
            self._inflight[key] = task
            task.add_done_callback(lambda _done, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def _lookup_and_store(self, key: str) -> CarrierResult:
        started = time.perf_counter()
        success = False
        try:
            raw = await self._rate_limiter.schedule(
                lambda: self._client.lookup(key),
                label=f"carrier_lookup:{key}",
            )
            carrier = canonical_carrier(raw)
            await self._cache_set(key, carrier)
            success = True
            return CarrierResult(carrier=carrier, confidence=confidence_for(carrier))
        finally:
            if self._metrics is not None:
                self._metrics.record(
                    MetricType.LOOKUP,
                    "carrier_lookup_ms",
                    (time.perf_counter() - started) * 1000.0,
                    success=success,
                    metadata={"phone": key},
                )

    async def identify_carrier_batch(
        self,
        phone_numbers: Iterable[str],
        *,
        concurrency: int = 1,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, CarrierResult]:
        """
        Resolve many numbers over up to ``concurrency`` lanes.

        The result is keyed by the input strings. A number whose lookup fails
        permanently maps to ``unknown`` with ``error`` set; the batch never aborts.
        """

        numbers = list(phone_numbers)
        unique = list(dict.fromkeys(numbers))
        if not unique:
            return {}

        pending: asyncio.Queue[str] = asyncio.Queue()
        for number in unique:
            pending.put_nowait(number)

        results: dict[str, CarrierResult] = {}
        completed = 0
        total = len(unique)

        async def run_lane(lane_id: int) -> None:
            nonlocal completed
            while True:
                try:
                    number = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await self.identify_carrier(number)
                except RateLimitedOperationError as exc:
                    log_event(
                        logger,
                        logging.WARNING,
                        "carrier_lookup_failed",
                        lane=lane_id,
                        phone=number,
                        attempts=exc.attempts,
                        error=str(exc),
                    )
                    result = CarrierResult(carrier=CARRIER_UNKNOWN, confidence=0.0, error=str(exc))
                results[number] = result
                completed += 1
                if on_progress is not None:
                    on_progress(completed, total)

        lanes = max(1, min(concurrency, total))
        await asyncio.gather(*(run_lane(lane_id) for lane_id in range(lanes)))

        log_event(
            logger,
            logging.INFO,
            "carrier_lookup_batch_completed",
            numbers=total,
            lanes=lanes,
            failures=sum(1 for result in results.values() if result.error),
        )
        return {number: results[number] for number in numbers}

    async def identify_carrier_by_business(self, query: str) -> list[BusinessCarrierResult]:
        """
        Find a business on the map by name and resolve the carrier of each
        match's phone number. Matches without a phone come back as unknown.
        """

        cleaned = " ".join((query or "").split())
        if not cleaned:
            raise ScrapeConfigError("A business name is required.")
        if self._business_search is None:
            raise ScraperError("Business search is not configured for this lookup service.")

        matches = await self._business_search.search(cleaned)
        results: list[BusinessCarrierResult] = []
        for match in matches:
            if not match.phone:
                carrier = CarrierResult(carrier=CARRIER_UNKNOWN, confidence=0.0)
            else:
                try:
                    carrier = await self.identify_carrier(match.phone)
                except RateLimitedOperationError as exc:
                    carrier = CarrierResult(carrier=CARRIER_UNKNOWN, confidence=0.0, error=str(exc))
            results.append(BusinessCarrierResult(query=cleaned, match=match, carrier=carrier))

        log_event(
            logger,
            logging.INFO,
            "business_carriers_resolved",
            query=cleaned,
            matches=len(results),
            resolved=sum(1 for result in results if result.carrier.resolved),
        )
        return results
