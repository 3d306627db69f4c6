"""
BrowserWorker: one browser session, one town at a time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from typing import Any, Protocol

from app.scraper.browser import BrowserLauncher, BrowserSession
from app.scraper.config.models import ScraperSettings
from app.scraper.errors import BrowserInitError
from app.scraper.logging_utils import log_event
from app.scraper.maps_scraper import MapsIndustryScraper
from app.scraper.metrics import MetricsRecorder
from app.scraper.types import BusinessRecord, IndustryFailure, TownResult
from db.models.scraper_metric import MetricType

logger = logging.getLogger(__name__)

OperatorLog = Callable[[str, str, str | None], None]


class WorkerState:
    IDLE = "idle"
    INITIALIZING_BROWSER = "initializing_browser"
    PROCESSING_TOWN = "processing_town"
    CLOSING_BROWSER = "closing_browser"
    ERROR = "error"


class IndustryScraper(Protocol):
    async def scrape(self) -> list[BusinessRecord]: ...


IndustryScraperFactory = Callable[..., IndustryScraper]


class BrowserWorker:
    """
    Processes towns handed out by the orchestrator.

    Industry failures are caught and returned as IndustryFailure entries.
    The only exception that escapes process_town is BrowserInitError.
    """

    def __init__(
        self,
        worker_id: int,
        *,
        launcher: BrowserLauncher,
        settings: ScraperSettings,
        scraper_factory: IndustryScraperFactory = MapsIndustryScraper,
        metrics: MetricsRecorder | None = None,
        on_log: OperatorLog | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.worker_id = worker_id
        self._launcher = launcher
        self._settings = settings
        self._scraper_factory = scraper_factory
        self._metrics = metrics
        self._on_log = on_log
        self._sleep = sleep
        self._browser: BrowserSession | None = None
        self._state = WorkerState.IDLE
        self.last_industry: str | None = None

    @property
    def state(self) -> str:
        return self._state

    def _log(self, message: str, *, level: str = "info", town: str | None = None) -> None:
        if self._on_log is not None:
            self._on_log(message, level, town)

    async def process_town(
        self,
        town: str,
        industries: Sequence[str],
        *,
        simultaneous_industries: int = 1,
    ) -> TownResult:
        started = time.monotonic()
        self.last_industry = None
        await self._ensure_browser(town)

        self._state = WorkerState.PROCESSING_TOWN
        self._log(f"Worker {self.worker_id} scraping {town} ({len(industries)} industries)", town=town)
        gate = asyncio.Semaphore(max(1, simultaneous_industries))
        try:
            outcomes = await asyncio.gather(
                *(self._scrape_industry(town, industry, gate) for industry in industries)
            )
        finally:
            if self._settings.teardown_browser_per_town:
                await self._teardown()
            self._state = WorkerState.IDLE

        businesses: list[BusinessRecord] = []
        failures: list[IndustryFailure] = []
        for records, failure in outcomes:
            businesses.extend(records)
            if failure is not None:
                failures.append(failure)

        duration = time.monotonic() - started
        log_event(
            logger,
            logging.INFO,
            "town_processed",
            worker_id=self.worker_id,
            town=town,
            businesses=len(businesses),
            industry_failures=len(failures),
            duration_seconds=round(duration, 3),
        )
        return TownResult(
            town=town,
            businesses=businesses,
            industry_failures=failures,
            duration_seconds=duration,
        )

    async def _ensure_browser(self, town: str) -> None:
        if self._browser is not None:
            return
        self._state = WorkerState.INITIALIZING_BROWSER
        try:
            self._browser = await self._launcher.launch()
        except BrowserInitError as exc:
            self._state = WorkerState.ERROR
            exc.town = exc.town or town
            raise
        except Exception as exc:
            self._state = WorkerState.ERROR
            raise BrowserInitError(f"Browser failed to start for {town}: {exc}", town=town) from exc
        if self._settings.browser_warmup_seconds > 0:
            await self._sleep(self._settings.browser_warmup_seconds)

    async def _scrape_industry(
        self,
        town: str,
        industry: str,
        gate: asyncio.Semaphore,
    ) -> tuple[list[BusinessRecord], IndustryFailure | None]:
        assert self._browser is not None
        async with gate:
            self.last_industry = industry
            started = time.perf_counter()
            page: Any = None
            try:
                page = await self._browser.new_page()
                scraper = self._scraper_factory(
                    page,
                    town=town,
                    industry=industry,
                    settings=self._settings,
                    metrics=self._metrics,
                )
                records = await scraper.scrape()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                error = f"{type(exc).__name__}: {exc}"
                log_event(
                    logger,
                    logging.WARNING,
                    "industry_failed",
                    worker_id=self.worker_id,
                    town=town,
                    industry=industry,
                    error=error,
                )
                self._log(f"{industry} in {town} failed: {error}", level="error", town=town)
                self._record_extraction(started, town, industry, success=False, businesses=0)
                return [], IndustryFailure(town=town, industry=industry, error=error)
            finally:
                if page is not None:
                    await self._close_page(page)

        bound = [self._bind(record, town, industry) for record in records]
        self._record_extraction(started, town, industry, success=True, businesses=len(bound))
        self._log(f"{industry} in {town}: {len(bound)} businesses", town=town)
        return bound, None

    @staticmethod
    def _bind(record: BusinessRecord, town: str, industry: str) -> BusinessRecord:
        if record.town == town and record.industry == industry:
            return record
        return replace(record, town=town, industry=industry)

    def _record_extraction(
        self,
        started: float,
        town: str,
        industry: str,
        *,
        success: bool,
        businesses: int,
    ) -> None:
        if self._metrics is None:
            return
        self._metrics.record(
            MetricType.EXTRACTION,
            "industry_scrape_ms",
            (time.perf_counter() - started) * 1000.0,
            success=success,
            metadata={"town": town, "industry": industry, "businesses": businesses},
        )

    async def _close_page(self, page: Any) -> None:
        try:
            await page.close()
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.DEBUG, "page_close_failed", worker_id=self.worker_id, error=str(exc))

    async def _teardown(self) -> None:
        if self._browser is None:
            return
        self._state = WorkerState.CLOSING_BROWSER
        browser, self._browser = self._browser, None
        try:
            await browser.close()
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "browser_close_failed", worker_id=self.worker_id, error=str(exc))

    async def close(self) -> None:
        """Release a browser kept alive across towns."""
        await self._teardown()
        self._state = WorkerState.IDLE
