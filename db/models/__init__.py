"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.provider_cache_entry import ProviderCacheEntry
from db.models.scraper_checkpoint import ScraperCheckpoint
from db.models.scraper_metric import ScraperMetric
from db.models.scraper_retry_item import ScraperRetryItem
from db.models.scraping_session import ScrapedBusiness, ScrapingSession

__all__ = [
    "ProviderCacheEntry",
    "ScrapedBusiness",
    "ScraperCheckpoint",
    "ScraperMetric",
    "ScraperRetryItem",
    "ScrapingSession",
]
