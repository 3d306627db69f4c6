"""
tests/conftest.py

Shared fixtures: scraper settings tuned for tests, fake browser,
carrier-lookup and business-search doubles, in-memory stores and an
in-memory SQLite database.

Nothing here launches chromium or touches the network.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import db.models  # noqa: F401  registers every model on Base.metadata
from app.scraper.config.models import ScraperSettings
from app.scraper.provider_cache import InMemoryProviderCache
from app.scraper.provider_lookup import ProviderLookupService
from app.scraper.rate_limiter import BackoffPolicy, RateLimiter
from app.scraper.storage import InMemoryCheckpointStore, InMemorySessionSink
from db.base import Base
from db.session import create_session_factory
from app.scraper.types import BusinessMatch
from tests.fakes import FakeBusinessSearch, FakeLauncher, FakeLookupClient, FakeScraperFactory


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings() -> ScraperSettings:
    """No sleeps anywhere: zero backoff, warmup and scroll pauses."""
    return ScraperSettings(
        lookup_rate_per_second=1000.0,
        lookup_max_attempts=2,
        backoff_initial_seconds=0.0,
        backoff_multiplier=2.0,
        backoff_max_seconds=0.0,
        browser_warmup_seconds=0.0,
        scroll_pause_seconds=0.0,
        navigation_retries=1,
        max_town_attempts=2,
        retry_max_attempts=3,
        log_buffer_size=15,
    )


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture()
def scrapers() -> FakeScraperFactory:
    return FakeScraperFactory()


@pytest.fixture()
def lookup_client() -> FakeLookupClient:
    return FakeLookupClient({"0111234567": "Telkom", "0821234567": "Vodacom"})


@pytest.fixture()
def business_search() -> FakeBusinessSearch:
    return FakeBusinessSearch(
        {
            "Ace Plumbing": [
                BusinessMatch(name="Ace Plumbing", phone="011 123 4567", maps_url="u1"),
                BusinessMatch(name="Ace Plumbing North", phone="+27 82 123 4567", maps_url="u2"),
                BusinessMatch(name="Ace Plumbing South", maps_url="u3"),
            ]
        }
    )


@pytest.fixture()
def provider_cache() -> InMemoryProviderCache:
    return InMemoryProviderCache(ttl_days=30)


@pytest.fixture()
def rate_limiter() -> RateLimiter:
    return RateLimiter(
        rate_per_second=1000.0,
        max_attempts=2,
        backoff=BackoffPolicy(initial_seconds=0.0, multiplier=2.0, max_seconds=0.0),
    )


@pytest.fixture()
def lookup_service(
    lookup_client: FakeLookupClient,
    provider_cache: InMemoryProviderCache,
    rate_limiter: RateLimiter,
) -> ProviderLookupService:
    return ProviderLookupService(client=lookup_client, cache=provider_cache, rate_limiter=rate_limiter)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture()
def sink() -> InMemorySessionSink:
    return InMemorySessionSink()


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------


def _enable_foreign_keys(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture()
def engine() -> Iterator[Engine]:
    """One in-memory database shared across threads for the whole test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", _enable_foreign_keys)
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker:
    return create_session_factory(engine)
