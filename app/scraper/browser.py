"""
Playwright browser sessions owned by one BrowserWorker at a time.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from app.scraper.config.models import ScraperSettings
from app.scraper.errors import BrowserInitError
from app.scraper.logging_utils import log_event

logger = logging.getLogger(__name__)

_CHROMIUM_ARGS = [
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-sync",
    "--mute-audio",
    "--no-default-browser-check",
    "--disable-default-apps",
    "--disable-features=TranslateUI",
    "--disable-gpu",
]


class BrowserSession(Protocol):
    async def new_page(self) -> Any: ...

    async def close(self) -> None: ...


class BrowserLauncher(Protocol):
    async def launch(self) -> BrowserSession: ...


class PlaywrightBrowserSession:
    def __init__(self, *, playwright: Playwright, browser: Browser, context: BrowserContext) -> None:
        self._playwright = playwright
        self._browser = browser
        self._context = context

    async def new_page(self) -> Page:
        return await self._context.new_page()

    async def close(self) -> None:
        # Each step runs even if an earlier one fails; the process must not leak chromium.
        for step, closer in (
            ("context", self._context.close),
            ("browser", self._browser.close),
            ("playwright", self._playwright.stop),
        ):
            try:
                await closer()
            except PlaywrightError as exc:
                log_event(logger, logging.DEBUG, "browser_close_step_failed", step=step, error=str(exc))


class PlaywrightLauncher:
    """
    Starts a fresh chromium instance per call. Lifecycle belongs to the caller.
    """

    def __init__(self, settings: ScraperSettings) -> None:
        self._settings = settings

    async def launch(self) -> PlaywrightBrowserSession:
        try:
            playwright = await async_playwright().start()
        except PlaywrightError as exc:
            raise BrowserInitError(f"Playwright driver failed to start: {exc}") from exc
        try:
            browser = await playwright.chromium.launch(
                headless=self._settings.headless,
                args=_CHROMIUM_ARGS,
            )
            context = await browser.new_context(
                user_agent=self._settings.user_agent,
                viewport={"width": 1366, "height": 900},
                locale="en-ZA",
                java_script_enabled=True,
            )
            context.set_default_navigation_timeout(self._settings.navigation_timeout_ms)
        except PlaywrightError as exc:
            await playwright.stop()
            raise BrowserInitError(f"Chromium failed to start: {exc}") from exc
        return PlaywrightBrowserSession(playwright=playwright, browser=browser, context=context)
