"""
Config helpers for the scraper runtime.
"""

from app.scraper.config.loader import get_scraper_settings, load_scraper_settings
from app.scraper.config.models import ScraperSettings

__all__ = [
    "ScraperSettings",
    "get_scraper_settings",
    "load_scraper_settings",
]
