from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI


def _validate_env() -> None:
    """
    Validate required environment variables at startup.

    Runs before any service or database connection is initialised and lists
    every problem at once so the operator can fix them in one restart.
    """

    from db.config import SUPPORTED_URL_PREFIXES, load_env_files, normalize_database_url

    load_env_files()

    errors: list[str] = []

    # --- Database URL ---------------------------------------------------
    configured = [
        os.getenv(name, "").strip()
        for name in ("SCRAPER_DATABASE_URL", "DATABASE_URL", "CLOUD_DATABASE_URL", "LOCAL_DATABASE_URL")
    ]
    urls = [normalize_database_url(url) for url in configured if url]
    if not urls:
        errors.append(
            "No database URL configured. Set SCRAPER_DATABASE_URL or DATABASE_URL."
        )
    elif not urls[0].startswith(SUPPORTED_URL_PREFIXES):
        errors.append(
            "The configured database URL must be PostgreSQL, or sqlite:/// for local runs."
        )

    # --- Lookup endpoint ------------------------------------------------
    lookup_url = os.getenv("SCRAPER_LOOKUP_URL", "").strip()
    if lookup_url and not lookup_url.startswith(("http://", "https://")):
        errors.append(f"SCRAPER_LOOKUP_URL='{lookup_url}' must be an http(s) URL.")

    if errors:
        raise RuntimeError(
            "Startup aborted due to configuration errors:\n"
            + "\n".join(f"  - {error}" for error in errors)
        )


def _configure_logging() -> None:
    """
    Configure root logging once for the API process.
    """

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _check_db() -> str:
    """Connect once and return the dialect name. Raises RuntimeError when unreachable."""
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    from db.session import get_engine

    engine = get_engine()
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise RuntimeError(f"Session database unavailable ({engine.url.get_backend_name()}).") from exc
    return engine.dialect.name


def _check_schema() -> None:
    """
    Session, checkpoint, retry, metric and cache tables must already exist.
    Startup never creates or migrates them.
    """
    from sqlalchemy import inspect as sa_inspect

    import db.models  # noqa: F401  registers all ORM models on Base.metadata
    from db.base import Base
    from db.session import get_engine

    present = set(sa_inspect(get_engine()).get_table_names())
    missing = sorted(name for name in Base.metadata.tables if name not in present)
    if not missing:
        return

    logging.getLogger(__name__).critical(
        "Scraper tables missing: %s. Run 'alembic upgrade head' before starting the API.",
        ", ".join(missing),
    )
    raise RuntimeError(f"Missing scraper tables: {', '.join(missing)}. Apply migrations and restart.")


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    """Check the database and schema, start maintenance jobs; pause live sessions on exit."""
    log = logging.getLogger(__name__)
    dialect = _check_db()
    _check_schema()
    log.info("Session database ready (%s)", dialect)

    from app.scheduler.jobs import build_scheduler
    from app.services.scrape_session_service import get_scrape_session_service

    scheduler = build_scheduler()
    scheduler.start()
    log.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))
    try:
        yield
    finally:
        await get_scrape_session_service().shutdown()
        scheduler.shutdown(wait=True)
        log.info("Scheduler shut down")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """

    _validate_env()
    _configure_logging()

    application = FastAPI(
        title="Business Scraper API",
        version="1.0.0",
        lifespan=_lifespan,
    )

    from app.api.routers import scraper_sessions_router

    application.include_router(scraper_sessions_router)

    @application.get("/health")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = create_app()
