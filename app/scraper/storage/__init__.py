"""
Storage layer exports.
"""

from app.scraper.storage.base import SessionSink
from app.scraper.storage.memory import InMemoryCheckpointStore, InMemorySessionSink
from app.scraper.storage.sqlalchemy_storage import (
    SQLAlchemyCheckpointStore,
    SQLAlchemyMetricsSink,
    SQLAlchemyProviderCache,
    SQLAlchemySessionSink,
)

__all__ = [
    "InMemoryCheckpointStore",
    "InMemorySessionSink",
    "SQLAlchemyCheckpointStore",
    "SQLAlchemyMetricsSink",
    "SQLAlchemyProviderCache",
    "SQLAlchemySessionSink",
    "SessionSink",
]
