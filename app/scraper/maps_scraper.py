"""
Map-search extraction on a single browser page: one (town, industry) pair,
or the top matches for a named business.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import quote

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from app.scraper.config.models import ScraperSettings
from app.scraper.logging_utils import log_event
from app.scraper.metrics import MetricsRecorder
from app.scraper.rate_limiter import BackoffPolicy
from app.scraper.types import BusinessMatch, BusinessRecord
from db.models.scraper_metric import MetricType

logger = logging.getLogger(__name__)

MAPS_SEARCH_URL = "https://www.google.com/maps/search/"
COUNTRY_SUFFIX = "South Africa"
FEED_SELECTOR = 'div[role="feed"]'
CARD_SELECTOR = 'div[role="feed"] .Nv2PK'
END_OF_LIST_MARKERS = (
    "You've reached the end of the list",
    "You've reached the end",
    "No more results",
)
RESULTS_SETTLE_SECONDS = 2.0
BUSINESS_LOOKUP_MAX_RESULTS = 3

_REGION_NAMES = (
    "south africa",
    "gauteng",
    "western cape",
    "eastern cape",
    "northern cape",
    "free state",
    "kwazulu-natal",
    "limpopo",
    "mpumalanga",
    "north west",
    "northwest",
)

_OPENING_HOURS_PATTERNS = (
    re.compile(r"^(open|closed|opens|closes)", re.IGNORECASE),
    re.compile(r"\d{1,2}:\d{2}\s*(am|pm)", re.IGNORECASE),
    re.compile(r"^(mon|tue|wed|thu|fri|sat|sun)", re.IGNORECASE),
)
_RATING_PATTERNS = (
    re.compile(r"^\d+(\.\d+)?\s*\([\d,]+\)"),
    re.compile(r"^\d+(\.\d+)?\s*stars?", re.IGNORECASE),
    re.compile(r"^\d+(\.\d+)?/5"),
)
_PHONE_PATTERNS = (
    re.compile(r"\d{3}[-.\s]?\d{3}[-.\s]?\d{4}"),
    re.compile(r"\+?\d{10,}"),
    re.compile(r"\(\d{3}\)\s?\d{3}[-.\s]?\d{4}"),
)
_ADDRESS_HINT = re.compile(
    r"\b(street|st|ave|avenue|road|rd|drive|dr|lane|ln|way|blvd|boulevard|crescent|cres)\b",
    re.IGNORECASE,
)
_SKIP_WORDS = ("open", "close", "wheelchair")
_PHONE_IN_LABEL = re.compile(r"\+?\d[\d\s\-()]+\d")

_COLLECT_CARDS_JS = """
(selector) => Array.from(document.querySelectorAll(selector)).map((card) => {
  const nameEl = card.querySelector('.qBF1Pd');
  const anchor = card.querySelector('a');
  const phoneEl = card.querySelector('.W4Efsd .UsdlK');
  const texts = [];
  card.querySelectorAll('.W4Efsd span').forEach((span) => {
    if (span.classList.contains('UsdlK') || span.querySelector('.UsdlK')) {
      return;
    }
    const text = (span.textContent || '').trim();
    if (text) {
      texts.push(text);
    }
  });
  return {
    name: nameEl ? (nameEl.textContent || '').trim() : '',
    href: anchor ? anchor.href || '' : '',
    phone: phoneEl ? (phoneEl.textContent || '').trim() : '',
    texts: texts,
  };
})
"""

_SINGLE_RESULT_JS = """
() => {
  const main = document.querySelector('div[role="main"]');
  const heading = main ? main.querySelector('h1') : null;
  const addressEl = document.querySelector('button[data-item-id="address"]')
    || document.querySelector('div[data-item-id="address"]');
  const phoneEl = document.querySelector('button[data-item-id^="phone:tel:"]');
  return {
    name: heading ? (heading.textContent || '').trim() : '',
    href: window.location.href,
    address: addressEl ? (addressEl.getAttribute('aria-label') || addressEl.textContent || '').trim() : '',
    phone_label: phoneEl ? (phoneEl.getAttribute('aria-label') || phoneEl.textContent || '') : '',
  };
}
"""

_SCROLL_FEED_JS = """
(selector) => {
  const feed = document.querySelector(selector);
  if (feed) {
    feed.scrollTop = feed.scrollHeight;
  }
}
"""


def build_search_query(industry: str, town: str) -> str:
    lowered = town.lower()
    if any(region in lowered for region in _REGION_NAMES):
        return f"{industry} in {town}"
    return f"{industry} in {town}, {COUNTRY_SUFFIX}"


def build_search_url(industry: str, town: str) -> str:
    return MAPS_SEARCH_URL + quote(build_search_query(industry, town), safe="")


def looks_like_opening_hours(text: str) -> bool:
    return any(pattern.search(text) for pattern in _OPENING_HOURS_PATTERNS)


def looks_like_rating(text: str) -> bool:
    return any(pattern.search(text) for pattern in _RATING_PATTERNS)


def looks_like_phone(text: str) -> bool:
    if sum(ch.isdigit() for ch in text) < 7:
        return False
    return any(pattern.search(text) for pattern in _PHONE_PATTERNS)


def pick_address(texts: list[str]) -> str:
    """
    Choose the address among a card's info fragments.

    Short fragments (three words or fewer) are treated as the category label;
    hours, ratings, phone numbers and accessibility notes are skipped.
    """

    for raw in texts:
        text = raw.lstrip("·").strip()
        if not text:
            continue
        lowered = text.lower()
        if (
            looks_like_opening_hours(text)
            or looks_like_rating(text)
            or looks_like_phone(text)
            or any(word in lowered for word in _SKIP_WORDS)
        ):
            continue
        if len(text.split()) <= 3:
            continue
        if _ADDRESS_HINT.search(text) or len(text) > 10:
            return text
    return ""


def _clean_label(value: str, prefix: str) -> str:
    value = " ".join(value.split())
    if value.lower().startswith(prefix.lower()):
        value = value[len(prefix):]
    return value.strip()


def parse_card_match(raw: dict[str, Any]) -> BusinessMatch | None:
    name = " ".join(str(raw.get("name") or "").split())
    if not name:
        return None
    return BusinessMatch(
        name=name,
        phone=str(raw.get("phone") or "").strip() or None,
        address=pick_address([str(text) for text in raw.get("texts") or []]),
        maps_url=str(raw.get("href") or ""),
    )


def parse_single_match(raw: dict[str, Any]) -> BusinessMatch | None:
    name = " ".join(str(raw.get("name") or "").split())
    if not name:
        return None
    phone_match = _PHONE_IN_LABEL.search(str(raw.get("phone_label") or ""))
    return BusinessMatch(
        name=name,
        phone=phone_match.group(0).strip() if phone_match else None,
        address=_clean_label(str(raw.get("address") or ""), "Address:"),
        maps_url=str(raw.get("href") or ""),
    )


def parse_card(raw: dict[str, Any], *, town: str, industry: str) -> BusinessRecord | None:
    match = parse_card_match(raw)
    return match.to_record(town=town, industry=industry) if match is not None else None


def parse_single_result(raw: dict[str, Any], *, town: str, industry: str) -> BusinessRecord | None:
    match = parse_single_match(raw)
    return match.to_record(town=town, industry=industry) if match is not None else None


def dedupe_records(records: list[BusinessRecord]) -> list[BusinessRecord]:
    seen: set[tuple[str, str]] = set()
    unique: list[BusinessRecord] = []
    for record in records:
        key = (record.name.lower(), record.maps_url or (record.phone or ""))
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


class _MapsPage:
    """
    Shared page handling: navigation with backoff between timeouts and
    navigation timing metrics.
    """

    def __init__(
        self,
        page: Any,
        *,
        settings: ScraperSettings,
        metrics: MetricsRecorder | None,
        sleep: Callable[[float], Awaitable[None]],
    ) -> None:
        self._page = page
        self._settings = settings
        self._metrics = metrics
        self._sleep = sleep
        self._backoff = BackoffPolicy.from_settings(settings)

    def _context(self) -> dict[str, Any]:
        return {}

    async def _navigate(self, url: str) -> None:
        attempts = self._settings.navigation_retries
        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                await self._page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=self._settings.navigation_timeout_ms,
                )
            except PlaywrightTimeoutError as exc:
                self._record_navigation(started, success=False, attempt=attempt)
                if attempt >= attempts:
                    raise
                delay = self._backoff.delay_for(attempt)
                log_event(
                    logger,
                    logging.WARNING,
                    "navigation_retry",
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(exc),
                    **self._context(),
                )
                await self._sleep(delay)
            else:
                self._record_navigation(started, success=True, attempt=attempt)
                return

    def _record_navigation(self, started: float, *, success: bool, attempt: int) -> None:
        if self._metrics is None:
            return
        self._metrics.record(
            MetricType.NAVIGATION,
            "search_page_load_ms",
            (time.perf_counter() - started) * 1000.0,
            success=success,
            metadata={**self._context(), "attempt": attempt},
        )

    async def _has_feed(self) -> bool:
        return await self._page.query_selector(FEED_SELECTOR) is not None


class MapsIndustryScraper(_MapsPage):
    """
    Scrapes one industry search within one town.

    Navigation timeouts are retried locally; anything else propagates to the
    worker, which records it as an industry failure.
    """

    def __init__(
        self,
        page: Any,
        *,
        town: str,
        industry: str,
        settings: ScraperSettings,
        metrics: MetricsRecorder | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(page, settings=settings, metrics=metrics, sleep=sleep)
        self._town = town
        self._industry = industry

    def _context(self) -> dict[str, Any]:
        return {"town": self._town, "industry": self._industry}

    async def scrape(self) -> list[BusinessRecord]:
        await self._navigate(build_search_url(self._industry, self._town))
        await self._sleep(RESULTS_SETTLE_SECONDS)

        if await self._has_feed():
            records = await self._extract_list_view()
        else:
            records = await self._extract_single_result()

        records = dedupe_records(records)
        log_event(
            logger,
            logging.INFO,
            "industry_scraped",
            town=self._town,
            industry=self._industry,
            businesses=len(records),
        )
        return records

    async def _reached_end_of_list(self) -> bool:
        body_text = await self._page.inner_text("body")
        return any(marker in body_text for marker in END_OF_LIST_MARKERS)

    async def _extract_list_view(self) -> list[BusinessRecord]:
        previous_count = 0
        idle_iterations = 0
        while idle_iterations < self._settings.max_scroll_idle_iterations:
            await self._page.evaluate(_SCROLL_FEED_JS, FEED_SELECTOR)
            await self._sleep(self._settings.scroll_pause_seconds)
            if await self._reached_end_of_list():
                break
            current_count = len(await self._page.query_selector_all(CARD_SELECTOR))
            if current_count == previous_count:
                idle_iterations += 1
            else:
                idle_iterations = 0
                previous_count = current_count

        raw_cards = await self._page.evaluate(_COLLECT_CARDS_JS, CARD_SELECTOR)
        records: list[BusinessRecord] = []
        for raw in raw_cards or []:
            record = parse_card(raw, town=self._town, industry=self._industry)
            if record is not None:
                records.append(record)
        return records

    async def _extract_single_result(self) -> list[BusinessRecord]:
        raw = await self._page.evaluate(_SINGLE_RESULT_JS)
        record = parse_single_result(raw or {}, town=self._town, industry=self._industry)
        return [record] if record is not None else []


class MapsBusinessScraper(_MapsPage):
    """
    Looks up a named business. Returns the top few list matches, or the one
    business when the search opens its details panel directly.
    """

    def __init__(
        self,
        page: Any,
        *,
        query: str,
        settings: ScraperSettings,
        metrics: MetricsRecorder | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_results: int = BUSINESS_LOOKUP_MAX_RESULTS,
    ) -> None:
        super().__init__(page, settings=settings, metrics=metrics, sleep=sleep)
        self._query = query
        self._max_results = max_results

    def _context(self) -> dict[str, Any]:
        return {"query": self._query}

    async def scrape(self) -> list[BusinessMatch]:
        await self._navigate(MAPS_SEARCH_URL + quote(self._query, safe=""))
        await self._sleep(RESULTS_SETTLE_SECONDS)

        matches: list[BusinessMatch] = []
        if await self._has_feed():
            raw_cards = await self._page.evaluate(_COLLECT_CARDS_JS, CARD_SELECTOR)
            for raw in (raw_cards or [])[: self._max_results]:
                match = parse_card_match(raw)
                if match is not None:
                    matches.append(match)
        else:
            match = parse_single_match(await self._page.evaluate(_SINGLE_RESULT_JS) or {})
            if match is not None:
                matches.append(match)

        log_event(logger, logging.INFO, "business_searched", query=self._query, matches=len(matches))
        return matches
