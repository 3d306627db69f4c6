"""
app/services/scrape_session_service.py

Session manager for scrape runs: owns the live orchestrators of this process
and falls back to persisted session rows for everything else.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from app.scraper.browser import BrowserLauncher, PlaywrightLauncher
from app.scraper.business_lookup import MapsBusinessSearch
from app.scraper.checkpoint import CheckpointStore
from app.scraper.config import ScraperSettings, get_scraper_settings
from app.scraper.errors import (
    InvalidSessionTransitionError,
    ScrapeConfigError,
    SessionNotFoundError,
)
from app.scraper.events import Subscription
from app.scraper.logging_utils import log_event
from app.scraper.metrics import MetricsRecorder, MetricsSink
from app.scraper.orchestrator import ScrapingOrchestrator, resolve_carriers
from app.scraper.provider_cache import ProviderCache
from app.scraper.provider_lookup import (
    BusinessSearch,
    CarrierLookupClient,
    PortingLookupClient,
    ProviderLookupService,
)
from app.scraper.rate_limiter import RateLimiter
from app.scraper.storage import (
    SQLAlchemyCheckpointStore,
    SQLAlchemyMetricsSink,
    SQLAlchemyProviderCache,
    SQLAlchemySessionSink,
)
from app.scraper.storage.base import SessionSink
from app.scraper.types import (
    BusinessCarrierResult,
    BusinessRecord,
    CarrierResult,
    LOOKUP_CONCURRENCY_BOUNDS,
    ScrapeConfig,
    ScrapeSummary,
    SessionStatus,
    TERMINAL_STATUSES,
    with_carriers,
)
from app.services.excel_export_service import ExcelExportService
from app.services.excel_import_service import read_business_rows

logger = logging.getLogger(__name__)

_CARRIER_LOOKUP_STATUSES = frozenset({SessionStatus.STOPPED, SessionStatus.COMPLETED})


@dataclass
class LiveSession:
    orchestrator: ScrapingOrchestrator
    task: asyncio.Task[ScrapeSummary]


@dataclass(frozen=True)
class CarrierLookupOutcome:
    session_id: str
    numbers_checked: int
    records_updated: int
    failures: int
    results: dict[str, CarrierResult]


@dataclass(frozen=True)
class WorkbookLookupOutcome:
    rows: int
    numbers_checked: int
    failures: int
    payload: bytes


def _check_session_id(session_id: str) -> str:
    try:
        return str(uuid.UUID(str(session_id)))
    except ValueError as exc:
        raise SessionNotFoundError(f"Session '{session_id}' was not found.") from exc


class ScrapeSessionService:
    """
    Starts, controls and reports on scrape sessions.

    Orchestrators live in ``_live`` while they run or sit paused in this
    process. Terminal sessions are answered from the SessionSink.
    """

    def __init__(
        self,
        *,
        settings: ScraperSettings,
        checkpoint_store: CheckpointStore,
        sink: SessionSink,
        provider_cache: ProviderCache,
        metrics_sink: MetricsSink | None = None,
        launcher: BrowserLauncher | None = None,
        lookup_client: CarrierLookupClient | None = None,
        orchestrator_factory: Callable[..., ScrapingOrchestrator] = ScrapingOrchestrator,
        exporter: ExcelExportService | None = None,
        business_search: BusinessSearch | None = None,
    ) -> None:
        self._settings = settings
        self._store = checkpoint_store
        self._sink = sink
        self._provider_cache = provider_cache
        self._metrics_sink = metrics_sink
        self._launcher = launcher or PlaywrightLauncher(settings)
        self._lookup_client = lookup_client or PortingLookupClient.from_settings(settings)
        self._rate_limiter = RateLimiter.from_settings(settings)
        self._orchestrator_factory = orchestrator_factory
        self._exporter = exporter or ExcelExportService()
        self._business_search = business_search or MapsBusinessSearch(self._launcher, settings)
        self._live: dict[str, LiveSession] = {}

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _lookup_service(self, metrics: MetricsRecorder | None) -> ProviderLookupService:
        return ProviderLookupService(
            client=self._lookup_client,
            cache=self._provider_cache,
            rate_limiter=self._rate_limiter,
            metrics=metrics,
            business_search=self._business_search,
        )

    def _build_orchestrator(self, session_id: str) -> ScrapingOrchestrator:
        metrics = MetricsRecorder(session_id=session_id, sink=self._metrics_sink)
        return self._orchestrator_factory(
            session_id=session_id,
            settings=self._settings,
            launcher=self._launcher,
            checkpoint_store=self._store,
            lookup_service=self._lookup_service(metrics),
            sink=self._sink,
            metrics=metrics,
        )

    def _launch(self, session_id: str, orchestrator: ScrapingOrchestrator, runner: Any) -> None:
        task = asyncio.create_task(runner, name=f"scrape-session-{session_id}")
        self._live[session_id] = LiveSession(orchestrator=orchestrator, task=task)
        task.add_done_callback(lambda done: self._on_task_done(session_id, done))

    def _on_task_done(self, session_id: str, task: asyncio.Task[ScrapeSummary]) -> None:
        if task.cancelled():
            log_event(logger, logging.WARNING, "session_task_cancelled", session_id=session_id)
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Session %s task crashed",
                session_id,
                exc_info=(type(error), error, error.__traceback__),
            )
            return
        live = self._live.get(session_id)
        if live is not None and live.task is task and live.orchestrator.state.is_terminal:
            self._live.pop(session_id, None)

    def live_session_ids(self) -> list[str]:
        return list(self._live)

    def _require_row(self, session_id: str) -> dict[str, Any]:
        row = self._sink.get_session(session_id)
        if row is None:
            raise SessionNotFoundError(f"Session '{session_id}' was not found.")
        return row

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, config: ScrapeConfig, *, name: str | None = None) -> str:
        session_id = str(uuid.uuid4())
        session_name = (name or "").strip() or (
            f"{', '.join(config.towns[:3])} / {', '.join(config.industries[:3])}"
        )
        await asyncio.to_thread(
            self._sink.create_session,
            session_id,
            name=session_name[:255],
            config=config.to_payload(),
        )
        orchestrator = self._build_orchestrator(session_id)
        self._launch(session_id, orchestrator, orchestrator.start(config))
        log_event(
            logger,
            logging.INFO,
            "session_started",
            session_id=session_id,
            towns=len(config.towns),
            industries=len(config.industries),
        )
        return session_id

    async def pause_session(self, session_id: str) -> dict[str, Any]:
        session_id = _check_session_id(session_id)
        live = self._live.get(session_id)
        if live is None:
            row = await asyncio.to_thread(self._require_row, session_id)
            raise InvalidSessionTransitionError(row["status"], SessionStatus.PAUSED)
        await live.orchestrator.pause()
        return live.orchestrator.status()

    async def resume_session(self, session_id: str) -> dict[str, Any]:
        session_id = _check_session_id(session_id)
        row = await asyncio.to_thread(self._require_row, session_id)
        live = self._live.get(session_id)
        if live is not None and not live.task.done():
            raise InvalidSessionTransitionError(live.orchestrator.state.status, SessionStatus.RUNNING)
        if row["status"] in TERMINAL_STATUSES:
            raise InvalidSessionTransitionError(row["status"], SessionStatus.RUNNING)

        checkpoint = await asyncio.to_thread(self._store.load_checkpoint, session_id)
        if checkpoint is None:
            raise SessionNotFoundError(f"Session '{session_id}' has no checkpoint to resume from.")

        if live is not None and live.orchestrator.state.status == SessionStatus.PAUSED:
            orchestrator = live.orchestrator
        else:
            orchestrator = self._build_orchestrator(session_id)
        self._launch(session_id, orchestrator, orchestrator.resume(checkpoint))
        log_event(logger, logging.INFO, "session_resumed", session_id=session_id)
        return orchestrator.status()

    async def stop_session(self, session_id: str, *, wait: bool = False) -> dict[str, Any]:
        """
        Cooperative stop. With ``wait`` the call returns after in-flight towns
        finish and results are saved.
        """

        session_id = _check_session_id(session_id)
        live = self._live.get(session_id)
        if live is None:
            row = await asyncio.to_thread(self._require_row, session_id)
            if row["status"] in TERMINAL_STATUSES:
                raise InvalidSessionTransitionError(row["status"], SessionStatus.STOPPED)
            # Paused before a restart: rebuild the results so stopping keeps them.
            orchestrator = self._build_orchestrator(session_id)
            checkpoint = await asyncio.to_thread(self._store.load_checkpoint, session_id)
            if checkpoint is not None:
                await orchestrator.restore(checkpoint)
            await orchestrator.stop()
            return orchestrator.status()

        await live.orchestrator.stop()
        if wait and not live.task.done():
            await asyncio.shield(live.task)
        # A paused run already returned, so its done callback never sees the stop.
        if self._live.get(session_id) is live and live.task.done() and live.orchestrator.state.is_terminal:
            self._live.pop(session_id, None)
        return live.orchestrator.status()

    async def wait_for(self, session_id: str) -> ScrapeSummary:
        """Block until the session's current run returns."""
        live = self._live.get(_check_session_id(session_id))
        if live is None:
            raise SessionNotFoundError(f"Session '{session_id}' is not running in this process.")
        return await asyncio.shield(live.task)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_status(self, session_id: str) -> dict[str, Any]:
        session_id = _check_session_id(session_id)
        live = self._live.get(session_id)
        if live is not None:
            return live.orchestrator.status()

        row = await asyncio.to_thread(self._require_row, session_id)
        snapshot = dict(row.get("state") or {})
        snapshot.update(
            session_id=session_id,
            status=row["status"],
            progress=row["progress"],
            error_message=row.get("error_message"),
            phase=None,
            active_workers=0,
            in_flight=[],
            recent_logs=[],
        )
        snapshot.setdefault("summary", row.get("summary"))
        return snapshot

    async def list_sessions(self, *, limit: int = 50, status: str | None = None) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._sink.list_sessions, limit=limit, status=status)

    def subscribe(self, session_id: str) -> Subscription:
        session_id = _check_session_id(session_id)
        live = self._live.get(session_id)
        if live is None:
            raise SessionNotFoundError(f"Session '{session_id}' is not running in this process.")
        return live.orchestrator.subscribe()

    async def get_results(self, session_id: str) -> list[BusinessRecord]:
        session_id = _check_session_id(session_id)
        live = self._live.get(session_id)
        if live is not None and not live.orchestrator.state.is_terminal:
            return list(live.orchestrator.state.businesses)
        await asyncio.to_thread(self._require_row, session_id)
        return await asyncio.to_thread(self._sink.load_businesses, session_id)

    # ------------------------------------------------------------------
    # Post-run operations
    # ------------------------------------------------------------------

    async def lookup_carriers(self, session_id: str) -> CarrierLookupOutcome:
        """
        Resolve carriers for a session that finished without its lookup phase,
        e.g. after an operator stop.
        """

        session_id = _check_session_id(session_id)
        row = await asyncio.to_thread(self._require_row, session_id)
        if row["status"] not in _CARRIER_LOOKUP_STATUSES:
            raise InvalidSessionTransitionError(row["status"], "carrier_lookup")

        records = await asyncio.to_thread(self._sink.load_businesses, session_id)
        config = row.get("config") or {}
        metrics = MetricsRecorder(session_id=session_id, sink=self._metrics_sink)
        results = await resolve_carriers(
            self._lookup_service(metrics),
            records,
            concurrency=int(config.get("simultaneous_lookups", 1)),
        )
        updated = await asyncio.to_thread(
            self._sink.update_carriers,
            session_id,
            {phone: result.carrier for phone, result in results.items()},
        )
        await asyncio.to_thread(metrics.flush)

        failures = sum(1 for result in results.values() if result.error)
        log_event(
            logger,
            logging.INFO,
            "session_carriers_resolved",
            session_id=session_id,
            numbers=len(results),
            records_updated=updated,
            failures=failures,
        )
        return CarrierLookupOutcome(
            session_id=session_id,
            numbers_checked=len(results),
            records_updated=updated,
            failures=failures,
            results=results,
        )

    async def export_workbook(self, session_id: str, *, by_carrier: bool = True) -> tuple[str, bytes]:
        session_id = _check_session_id(session_id)
        row = await asyncio.to_thread(self._require_row, session_id)
        records = await self.get_results(session_id)
        payload = await asyncio.to_thread(
            self._exporter.export_bytes,
            records,
            session_name=row.get("name"),
            by_carrier=by_carrier,
            session_summary=row.get("summary"),
        )
        return row.get("name") or "", payload

    async def lookup_business(self, query: str) -> list[BusinessCarrierResult]:
        """Search the map for a business by name and resolve each match's carrier."""
        # Metric rows belong to a session; standalone lookups record none.
        return await self._lookup_service(None).identify_carrier_by_business(query)

    async def lookup_workbook(
        self,
        payload: bytes,
        *,
        filename: str | None = None,
        concurrency: int = 2,
    ) -> WorkbookLookupOutcome:
        """
        Resolve carriers for the rows of an uploaded workbook and return it
        re-exported with a carrier column and per-carrier sheets.
        """

        low, high = LOOKUP_CONCURRENCY_BOUNDS
        if not low <= concurrency <= high:
            raise ScrapeConfigError(f"simultaneous_lookups must be between {low} and {high}, got {concurrency}.")

        records = await asyncio.to_thread(read_business_rows, payload)
        results = await resolve_carriers(self._lookup_service(None), records, concurrency=concurrency)

        updated = with_carriers(records, results)
        failures = sum(1 for result in results.values() if result.error)
        workbook = await asyncio.to_thread(
            self._exporter.export_bytes,
            updated,
            session_name=filename,
            by_carrier=True,
            session_summary={"lookup_failures": failures},
        )
        log_event(
            logger,
            logging.INFO,
            "workbook_carriers_resolved",
            filename=filename,
            rows=len(records),
            numbers=len(results),
            failures=failures,
        )
        return WorkbookLookupOutcome(
            rows=len(records),
            numbers_checked=len(results),
            failures=failures,
            payload=workbook,
        )

    async def delete_session(self, session_id: str) -> None:
        session_id = _check_session_id(session_id)
        live = self._live.get(session_id)
        if live is not None and not live.task.done():
            raise InvalidSessionTransitionError(live.orchestrator.state.status, "deleted")
        deleted = await asyncio.to_thread(self._sink.delete_session, session_id)
        # Checkpoint, retry items and metrics go with the session row.
        await asyncio.to_thread(self._store.delete_checkpoint, session_id)
        await asyncio.to_thread(self._store.clear_retries, session_id)
        self._live.pop(session_id, None)
        if not deleted:
            raise SessionNotFoundError(f"Session '{session_id}' was not found.")
        log_event(logger, logging.INFO, "session_deleted", session_id=session_id)

    async def shutdown(self) -> None:
        """Pause every running session so it can be resumed after restart."""
        for session_id, live in list(self._live.items()):
            orchestrator = live.orchestrator
            # Sessions already in their lookup phase are left to complete.
            if orchestrator.state.status == SessionStatus.RUNNING and not orchestrator.in_lookup_phase:
                await orchestrator.pause()
        pending = [live.task for live in self._live.values() if not live.task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        log_event(
            logger,
            logging.INFO,
            "session_manager_shutdown",
            sessions=len(pending),
            at=datetime.now(timezone.utc).isoformat(),
        )


@lru_cache(maxsize=1)
def get_scrape_session_service() -> ScrapeSessionService:
    """
    Build and cache the database-backed session service.
    """

    from db.session import get_session_factory

    settings = get_scraper_settings()
    session_factory = get_session_factory()
    return ScrapeSessionService(
        settings=settings,
        checkpoint_store=SQLAlchemyCheckpointStore(session_factory=session_factory),
        sink=SQLAlchemySessionSink(session_factory=session_factory),
        provider_cache=SQLAlchemyProviderCache(
            session_factory=session_factory,
            ttl_days=settings.provider_cache_ttl_days,
        ),
        metrics_sink=SQLAlchemyMetricsSink(session_factory=session_factory),
    )
