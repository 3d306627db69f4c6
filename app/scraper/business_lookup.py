"""
Map search for a single named business, on a browser launched per query.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from app.scraper.browser import BrowserLauncher, BrowserSession
from app.scraper.config.models import ScraperSettings
from app.scraper.errors import BrowserInitError
from app.scraper.logging_utils import log_event
from app.scraper.maps_scraper import MapsBusinessScraper
from app.scraper.metrics import MetricsRecorder
from app.scraper.types import BusinessMatch

logger = logging.getLogger(__name__)

BusinessScraperFactory = Callable[..., Any]


class MapsBusinessSearch:
    def __init__(
        self,
        launcher: BrowserLauncher,
        settings: ScraperSettings,
        *,
        scraper_factory: BusinessScraperFactory = MapsBusinessScraper,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._launcher = launcher
        self._settings = settings
        self._scraper_factory = scraper_factory
        self._metrics = metrics

    async def search(self, query: str) -> list[BusinessMatch]:
        try:
            browser: BrowserSession = await self._launcher.launch()
        except BrowserInitError:
            raise
        except Exception as exc:
            raise BrowserInitError(f"Browser failed to start for business search: {exc}") from exc

        try:
            page = await browser.new_page()
            try:
                scraper = self._scraper_factory(
                    page,
                    query=query,
                    settings=self._settings,
                    metrics=self._metrics,
                )
                return await scraper.scrape()
            finally:
                await self._close_quietly(page.close, "page_close_failed")
        finally:
            await self._close_quietly(browser.close, "browser_close_failed")

    @staticmethod
    async def _close_quietly(closer: Callable[[], Any], event: str) -> None:
        try:
            await closer()
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, event, error=str(exc))
