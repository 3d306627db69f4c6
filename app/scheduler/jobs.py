"""
app/scheduler/jobs.py

APScheduler-based maintenance jobs for the scraper service.

Schedule
--------
  stale_sessions        every 5 minutes
                        Fail `running` sessions whose row has not been updated
                        within SCRAPER_STALE_SESSION_MINUTES and that are not
                        live in this process (a crashed or killed run).
  provider_cache_purge  03:00 UTC every day
                        Delete carrier cache rows older than
                        SCRAPER_PROVIDER_CACHE_TTL_DAYS.

Lifecycle
----------
Call ``build_scheduler()`` once to get a configured ``BackgroundScheduler``.
Start it on app boot; shut it down gracefully on app shutdown.
The scheduler is wired into FastAPI via the ``lifespan`` context in main.py.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.scraper.config import get_scraper_settings
from db.repositories.provider_cache_repository import ProviderCacheRepository
from db.repositories.scraping_session_repository import ScrapingSessionRepository
from db.session import SessionLocal

logger = logging.getLogger(__name__)

STALE_SESSION_INTERVAL_MINUTES = 5


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------


@contextmanager
def _session_scope(factory: Callable[[], Session] = SessionLocal) -> Iterator[Session]:
    """Yield a fresh session and ensure it is closed on exit."""
    session: Session = factory()
    try:
        yield session
    finally:
        session.close()


def _live_session_ids() -> list[uuid.UUID]:
    from app.services.scrape_session_service import get_scrape_session_service

    return [uuid.UUID(session_id) for session_id in get_scrape_session_service().live_session_ids()]


# ---------------------------------------------------------------------------
# Job: stale session sweep
# ---------------------------------------------------------------------------


def run_stale_session_sweep(
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    live_ids: Iterable[uuid.UUID] | None = None,
    now: datetime | None = None,
) -> list[uuid.UUID]:
    """
    Mark abandoned `running` sessions as failed. Returns the affected ids.
    """

    settings = get_scraper_settings()
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=settings.stale_session_minutes)
    exclude = list(live_ids) if live_ids is not None else _live_session_ids()

    with _session_scope(session_factory) as db:
        try:
            stale = list(
                ScrapingSessionRepository(db).mark_stale_running_failed(
                    older_than=cutoff,
                    exclude=exclude,
                )
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Scheduler: stale_sessions failed: %s", exc)
            return []

    if stale:
        logger.warning(
            "Scheduler: stale_sessions marked %d session(s) failed: %s",
            len(stale),
            ", ".join(str(session_id) for session_id in stale),
        )
    else:
        logger.debug("Scheduler: stale_sessions found nothing to do")
    return stale


# ---------------------------------------------------------------------------
# Job: provider cache purge
# ---------------------------------------------------------------------------


def run_provider_cache_purge(
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    now: datetime | None = None,
) -> int:
    """
    Delete carrier cache entries past their TTL. Returns the row count.
    """

    settings = get_scraper_settings()
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=settings.provider_cache_ttl_days)

    with _session_scope(session_factory) as db:
        try:
            purged = ProviderCacheRepository(db).purge_older_than(cutoff)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Scheduler: provider_cache_purge failed: %s", exc)
            return 0

    logger.info("Scheduler: provider_cache_purge removed %d entries older than %s", purged, cutoff.date())
    return purged


# ---------------------------------------------------------------------------
# Scheduler factory
# ---------------------------------------------------------------------------


def build_scheduler() -> BackgroundScheduler:
    """
    Return a configured (not yet started) BackgroundScheduler.
    """

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_stale_session_sweep,
        trigger="interval",
        minutes=STALE_SESSION_INTERVAL_MINUTES,
        id="stale_sessions",
        name="Stale running session sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_provider_cache_purge,
        trigger="cron",
        hour=3,
        minute=0,
        id="provider_cache_purge",
        name="Provider cache purge",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    return scheduler
