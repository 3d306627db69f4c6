"""
Repository layer exports.
"""

from db.repositories.checkpoint_repository import CheckpointRepository
from db.repositories.metrics_repository import MetricsRepository
from db.repositories.provider_cache_repository import ProviderCacheRepository
from db.repositories.scraping_session_repository import ScrapingSessionRepository

__all__ = [
    "CheckpointRepository",
    "MetricsRepository",
    "ProviderCacheRepository",
    "ScrapingSessionRepository",
]
