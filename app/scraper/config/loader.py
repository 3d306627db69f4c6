"""
Environment loader for scraper settings.
"""

from __future__ import annotations

import os
from functools import lru_cache

from db.config import load_env_files

from app.scraper.config.models import DEFAULT_LOOKUP_URL, DEFAULT_USER_AGENT, ScraperSettings


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    stripped = raw.strip()
    return stripped if stripped else default


def load_scraper_settings() -> ScraperSettings:
    """
    Build settings from SCRAPER_* environment variables, clamping to sane minimums.
    """

    initial_backoff = max(0.0, _get_float_env("SCRAPER_BACKOFF_INITIAL_SECONDS", 1.0))
    return ScraperSettings(
        lookup_url=_get_str_env("SCRAPER_LOOKUP_URL", DEFAULT_LOOKUP_URL),
        lookup_rate_per_second=max(0.1, _get_float_env("SCRAPER_LOOKUP_RATE_PER_SECOND", 1.0)),
        lookup_max_attempts=max(1, _get_int_env("SCRAPER_LOOKUP_MAX_ATTEMPTS", 3)),
        lookup_timeout_seconds=max(1.0, _get_float_env("SCRAPER_LOOKUP_TIMEOUT_SECONDS", 15.0)),
        backoff_initial_seconds=initial_backoff,
        backoff_multiplier=max(1.0, _get_float_env("SCRAPER_BACKOFF_MULTIPLIER", 2.0)),
        backoff_max_seconds=max(
            initial_backoff,
            _get_float_env("SCRAPER_BACKOFF_MAX_SECONDS", 30.0),
        ),
        provider_cache_ttl_days=max(1, _get_int_env("SCRAPER_PROVIDER_CACHE_TTL_DAYS", 30)),
        user_agent=_get_str_env("SCRAPER_USER_AGENT", DEFAULT_USER_AGENT),
        headless=_get_bool_env("SCRAPER_HEADLESS", True),
        navigation_timeout_ms=max(1_000, _get_int_env("SCRAPER_NAVIGATION_TIMEOUT_MS", 60_000)),
        navigation_retries=max(1, _get_int_env("SCRAPER_NAVIGATION_RETRIES", 2)),
        browser_warmup_seconds=max(0.0, _get_float_env("SCRAPER_BROWSER_WARMUP_SECONDS", 2.0)),
        max_scroll_idle_iterations=max(
            1, _get_int_env("SCRAPER_MAX_SCROLL_IDLE_ITERATIONS", 3)
        ),
        scroll_pause_seconds=max(0.0, _get_float_env("SCRAPER_SCROLL_PAUSE_SECONDS", 1.5)),
        max_town_attempts=max(1, _get_int_env("SCRAPER_MAX_TOWN_ATTEMPTS", 3)),
        teardown_browser_per_town=_get_bool_env("SCRAPER_TEARDOWN_BROWSER_PER_TOWN", True),
        log_buffer_size=max(1, _get_int_env("SCRAPER_LOG_BUFFER_SIZE", 15)),
        retry_max_attempts=max(1, _get_int_env("SCRAPER_RETRY_MAX_ATTEMPTS", 3)),
        stale_session_minutes=max(1, _get_int_env("SCRAPER_STALE_SESSION_MINUTES", 10)),
    )


@lru_cache(maxsize=1)
def get_scraper_settings() -> ScraperSettings:
    """
    Return cached scraper settings.
    """

    load_env_files()
    return load_scraper_settings()
