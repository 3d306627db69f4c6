"""
Scraper runtime settings.
"""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_LOOKUP_URL = "https://www.porting.co.za/PublicWebsite/crdb"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class ScraperSettings:
    """
    Process-wide scraper tuning. Per-session knobs live on ScrapeConfig.
    """

    # Carrier lookups
    lookup_url: str = DEFAULT_LOOKUP_URL
    lookup_rate_per_second: float = 1.0
    lookup_max_attempts: int = 3
    lookup_timeout_seconds: float = 15.0
    backoff_initial_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 30.0
    provider_cache_ttl_days: int = 30

    # Browser workers
    user_agent: str = DEFAULT_USER_AGENT
    headless: bool = True
    navigation_timeout_ms: int = 60_000
    navigation_retries: int = 2
    browser_warmup_seconds: float = 2.0
    max_scroll_idle_iterations: int = 3
    scroll_pause_seconds: float = 1.5
    max_town_attempts: int = 3
    teardown_browser_per_town: bool = True

    # Session bookkeeping
    log_buffer_size: int = 15
    retry_max_attempts: int = 3
    stale_session_minutes: int = 10
