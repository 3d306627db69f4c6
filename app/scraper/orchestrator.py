"""
ScrapingOrchestrator: worker pool, town queue, checkpoints and the
post-extraction carrier lookup phase for one session.

All SessionState mutation, checkpoint writes and event emission happen on the
event loop under ``self._lock``; workers only hand results back.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

from app.scraper.browser import BrowserLauncher
from app.scraper.checkpoint import BatchState, Checkpoint, CheckpointStore, RetryQueue
from app.scraper.config.models import ScraperSettings
from app.scraper.errors import (
    BrowserInitError,
    CheckpointStoreError,
    InvalidSessionTransitionError,
)
from app.scraper.events import CompleteEvent, EventStream, LogEvent, ProgressEvent, Subscription
from app.scraper.logging_utils import LogBuffer, LogEntry, log_event
from app.scraper.maps_scraper import MapsIndustryScraper
from app.scraper.metrics import MetricsRecorder
from app.scraper.provider_lookup import ProviderLookupService
from app.scraper.rate_limiter import BackoffPolicy
from app.scraper.storage.base import SessionSink
from app.scraper.types import (
    BusinessRecord,
    CarrierResult,
    IndustryFailure,
    ScrapeConfig,
    ScrapeSummary,
    SessionState,
    SessionStatus,
    TownResult,
)
from app.scraper.worker import BrowserWorker, IndustryScraperFactory
from db.models.scraper_retry_item import RetryItemType

logger = logging.getLogger(__name__)

_NAVIGATION_KINDS = (RetryItemType.NAVIGATION,)
_RESTORE_HORIZON = datetime.max.replace(tzinfo=timezone.utc)
LOOKUP_PROGRESS_LOG_EVERY = 25


class HaltReason:
    PAUSE = "pause"
    STOP = "stop"
    FATAL = "fatal"


@dataclass(frozen=True)
class TownTask:
    town: str
    industries: tuple[str, ...]
    attempt: int = 0


WorkerFactory = Callable[[int], BrowserWorker]


async def resolve_carriers(
    lookup_service: ProviderLookupService,
    records: Sequence[BusinessRecord],
    *,
    concurrency: int,
    on_progress: Callable[[int, int], None] | None = None,
) -> dict[str, CarrierResult]:
    """
    Batch-resolve the carriers of every record that has a phone number.
    """

    phones = [record.phone for record in records if record.phone]
    if not phones:
        return {}
    return await lookup_service.identify_carrier_batch(
        phones,
        concurrency=concurrency,
        on_progress=on_progress,
    )


class ScrapingOrchestrator:
    def __init__(
        self,
        *,
        session_id: str,
        settings: ScraperSettings,
        launcher: BrowserLauncher,
        checkpoint_store: CheckpointStore,
        lookup_service: ProviderLookupService | None = None,
        sink: SessionSink | None = None,
        events: EventStream | None = None,
        metrics: MetricsRecorder | None = None,
        scraper_factory: IndustryScraperFactory = MapsIndustryScraper,
        worker_factory: WorkerFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self._settings = settings
        self._launcher = launcher
        self._store = checkpoint_store
        self._lookup_service = lookup_service
        self._sink = sink
        self._events = events or EventStream()
        self._metrics = metrics
        self._scraper_factory = scraper_factory
        self._worker_factory = worker_factory or self._default_worker
        self._clock = clock
        self._sleep = sleep

        self._state = SessionState(session_id=session_id)
        self._log_buffer = LogBuffer(capacity=settings.log_buffer_size)
        self._retry_queue = RetryQueue(
            checkpoint_store,
            session_id=session_id,
            backoff=BackoffPolicy.from_settings(settings),
            max_attempts=settings.retry_max_attempts,
        )
        self._config: ScrapeConfig | None = None
        self._lock = asyncio.Lock()
        self._dispatch_lock = asyncio.Lock()
        self._halt = asyncio.Event()
        self._halt_reason: str | None = None
        self._fatal: BaseException | None = None
        self._lookup_phase = False
        self._last_position: tuple[str | None, str | None] = (None, None)

        self._fresh: deque[TownTask] = deque()
        self._ready: deque[TownTask] = deque()
        self._in_flight: dict[int, str] = {}
        self._town_attempts: dict[str, int] = {}
        self._town_durations: list[float] = []
        self._worker_count = 0
        self._active_workers = 0
        self._peak_active_workers = 0
        self._last_percent = 0
        self._run_started: float | None = None
        self._elapsed_before_run = 0.0

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> ScrapeConfig | None:
        return self._config

    @property
    def events(self) -> EventStream:
        return self._events

    @property
    def in_lookup_phase(self) -> bool:
        return self._lookup_phase

    @property
    def peak_active_workers(self) -> int:
        return self._peak_active_workers

    def subscribe(self) -> Subscription:
        return self._events.subscribe()

    def recent_logs(self) -> list[LogEntry]:
        return self._log_buffer.entries()

    def status(self) -> dict[str, Any]:
        snapshot = self._state.snapshot()
        snapshot.update(
            phase=self._phase(),
            active_workers=self._active_workers,
            in_flight=sorted(self._in_flight.values()),
            recent_logs=[entry.to_dict() for entry in self._log_buffer.entries()],
        )
        return snapshot

    def _phase(self) -> str | None:
        if self._state.status != SessionStatus.RUNNING:
            return None
        return "carrier_lookup" if self._lookup_phase else "extraction"

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def start(self, config: ScrapeConfig) -> ScrapeSummary:
        """
        Run the session to completion, pause or stop and return its summary.
        """

        if self._state.status != SessionStatus.PENDING:
            raise InvalidSessionTransitionError(self._state.status, SessionStatus.RUNNING)
        self._config = config
        self._state.total_towns = len(config.towns)
        self._fresh = deque(TownTask(town=town, industries=config.industries) for town in config.towns)
        return await self._run()

    async def resume(self, checkpoint: Checkpoint) -> ScrapeSummary:
        """
        Rebuild the queue from ``checkpoint`` and continue. Works both on the
        paused orchestrator itself and on a fresh one after a restart.
        """

        if self._state.status not in (SessionStatus.PENDING, SessionStatus.PAUSED):
            raise InvalidSessionTransitionError(self._state.status, SessionStatus.RUNNING)
        if checkpoint.session_id != self.session_id:
            raise ValueError(
                f"Checkpoint belongs to session {checkpoint.session_id}, not {self.session_id}."
            )
        await self.restore(checkpoint)
        return await self._run()

    async def pause(self) -> None:
        """Let in-flight towns finish, then checkpoint and stop pulling work."""
        self._reject_during_lookup(SessionStatus.PAUSED)
        if self._state.status != SessionStatus.RUNNING:
            raise InvalidSessionTransitionError(self._state.status, SessionStatus.PAUSED)
        if self._halt_reason is None:
            self._halt_reason = HaltReason.PAUSE
            self._log("Pause requested; finishing in-flight towns")
        self._halt.set()

    async def stop(self) -> None:
        """
        Cooperative stop. A running session finalizes once in-flight towns
        finish; a paused or pending session finalizes immediately.
        """

        self._reject_during_lookup(SessionStatus.STOPPED)
        status = self._state.status
        if status == SessionStatus.RUNNING:
            if self._halt_reason != HaltReason.FATAL:
                self._halt_reason = HaltReason.STOP
            self._log("Stop requested; finishing in-flight towns")
            self._halt.set()
            return
        if status in (SessionStatus.PAUSED, SessionStatus.PENDING):
            async with self._lock:
                self._log("Session stopped")
                await self._finalize(SessionStatus.STOPPED)
            return
        raise InvalidSessionTransitionError(status, SessionStatus.STOPPED)

    def _reject_during_lookup(self, target: str) -> None:
        # Extraction is finished once lookups start; the session can only complete.
        if self._lookup_phase:
            raise InvalidSessionTransitionError(f"{SessionStatus.RUNNING} (carrier lookup)", target)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _run(self) -> ScrapeSummary:
        assert self._config is not None
        config = self._config
        self._state.transition(SessionStatus.RUNNING)
        self._halt.clear()
        self._halt_reason = None
        self._run_started = self._clock()

        self._log(
            f"Session started: {len(self._fresh)} of {self._state.total_towns} towns queued, "
            f"{len(config.industries)} industries, {config.simultaneous_towns} workers"
        )
        try:
            await self._persist_snapshot()
        except CheckpointStoreError as exc:
            self._fail(exc)

        self._worker_count = min(config.simultaneous_towns, len(self._fresh))
        if self._worker_count > 0 and self._fatal is None:
            workers = [self._worker_factory(worker_id) for worker_id in range(1, self._worker_count + 1)]
            try:
                await asyncio.gather(*(self._worker_loop(worker) for worker in workers))
            finally:
                for worker in workers:
                    await worker.close()

        log_event(
            logger,
            logging.INFO,
            "extraction_phase_finished",
            session_id=self.session_id,
            halt_reason=self._halt_reason,
            completed_towns=len(self._state.completed_towns),
            failed_towns=len(self._state.failed_towns),
        )
        return await self._finish()

    def _default_worker(self, worker_id: int) -> BrowserWorker:
        return BrowserWorker(
            worker_id,
            launcher=self._launcher,
            settings=self._settings,
            scraper_factory=self._scraper_factory,
            metrics=self._metrics,
            on_log=self._log_from_worker,
            sleep=self._sleep,
        )

    async def _worker_loop(self, worker: BrowserWorker) -> None:
        assert self._config is not None
        try:
            while True:
                task = await self._next_task()
                if task is None:
                    return
                self._in_flight[worker.worker_id] = task.town
                self._active_workers += 1
                self._peak_active_workers = max(self._peak_active_workers, self._active_workers)
                try:
                    result = await worker.process_town(
                        task.town,
                        task.industries,
                        simultaneous_industries=self._config.simultaneous_industries,
                    )
                except BrowserInitError as exc:
                    await self._handle_browser_failure(task, exc)
                    continue
                finally:
                    self._active_workers -= 1
                    self._in_flight.pop(worker.worker_id, None)
                await self._handle_town_result(task, result, last_industry=worker.last_industry)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail(exc)

    async def _next_task(self) -> TownTask | None:
        async with self._dispatch_lock:
            while True:
                if self._halt.is_set():
                    return None
                if self._fresh:
                    return self._fresh.popleft()
                if self._ready:
                    return self._ready.popleft()
                try:
                    due = await asyncio.to_thread(self._retry_queue.dequeue_ready, kinds=_NAVIGATION_KINDS)
                    for item in due:
                        self._ready.append(self._task_from_retry(item.payload, item.attempts))
                    if self._ready:
                        continue
                    wait_seconds = await asyncio.to_thread(
                        self._retry_queue.seconds_until_next, kinds=_NAVIGATION_KINDS
                    )
                except CheckpointStoreError as exc:
                    self._fail(exc)
                    return None
                if wait_seconds is None:
                    return None
                try:
                    await asyncio.wait_for(self._halt.wait(), timeout=max(wait_seconds, 0.01))
                except asyncio.TimeoutError:
                    pass

    def _task_from_retry(self, payload: dict[str, Any], attempts: int) -> TownTask:
        assert self._config is not None
        industries = tuple(payload.get("industries") or self._config.industries)
        return TownTask(town=str(payload["town"]), industries=industries, attempt=attempts)

    async def _handle_town_result(
        self,
        task: TownTask,
        result: TownResult,
        *,
        last_industry: str | None = None,
    ) -> None:
        async with self._lock:
            self._last_position = (task.town, last_industry)
            self._state.record_town_success(result)
            self._town_durations.append(result.duration_seconds)
            self._town_attempts[task.town] = task.attempt + 1
            failed = len(result.industry_failures)
            level = "warning" if failed else "info"
            suffix = f", {failed} industr{'y' if failed == 1 else 'ies'} failed" if failed else ""
            self._log(
                f"Completed {task.town}: {len(result.businesses)} businesses{suffix}",
                level=level,
                town=task.town,
            )
            if self._metrics is not None:
                self._metrics.record_memory()
            try:
                for failure in result.industry_failures:
                    await asyncio.to_thread(
                        self._retry_queue.enqueue,
                        RetryItemType.EXTRACTION,
                        failure.to_dict(),
                        attempts=1,
                    )
                await self._checkpoint(current_town=task.town)
            except CheckpointStoreError as exc:
                self._fail(exc)
            self._emit_progress(task.town)

    async def _handle_browser_failure(self, task: TownTask, exc: BrowserInitError) -> None:
        attempts = task.attempt + 1
        async with self._lock:
            self._town_attempts[task.town] = attempts
            try:
                item = await asyncio.to_thread(
                    self._retry_queue.record_failure,
                    RetryItemType.NAVIGATION,
                    {"town": task.town, "industries": list(task.industries), "error": str(exc)},
                    attempts=attempts,
                    max_attempts=self._settings.max_town_attempts,
                )
            except CheckpointStoreError as store_exc:
                self._fail(store_exc)
                return

            if item is None:
                reason = f"Browser failed to start after {attempts} attempts: {exc}"
                self._state.record_town_failure(task.town, reason)
                self._log(f"{task.town} failed: {reason}", level="error", town=task.town)
                try:
                    await self._checkpoint(current_town=task.town)
                except CheckpointStoreError as store_exc:
                    self._fail(store_exc)
                self._emit_progress(task.town)
                return

            delay = (item.next_retry_at - datetime.now(timezone.utc)).total_seconds()
            self._log(
                f"Browser failed for {task.town} (attempt {attempts}/{self._settings.max_town_attempts}); "
                f"retrying in {max(0.0, delay):.1f}s",
                level="warning",
                town=task.town,
            )
            try:
                await self._checkpoint(current_town=task.town)
            except CheckpointStoreError as store_exc:
                self._fail(store_exc)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _finish(self) -> ScrapeSummary:
        async with self._lock:
            if self._fatal is not None:
                self._state.error_message = f"{type(self._fatal).__name__}: {self._fatal}"
                self._state.error_detail = "".join(traceback.format_exception(self._fatal))
                self._log(f"Session failed: {self._state.error_message}", level="error")
                return await self._finalize(SessionStatus.FAILED)

            if self._halt_reason == HaltReason.STOP:
                self._log(
                    f"Session stopped after {len(self._state.completed_towns)} of "
                    f"{self._state.total_towns} towns"
                )
                return await self._finalize(SessionStatus.STOPPED)

            if self._halt_reason == HaltReason.PAUSE:
                return await self._enter_pause()

            if self._state.total_towns > 0 and not self._state.completed_towns:
                self._state.error_message = "No towns were scraped successfully."
                self._log("Session failed: no towns were scraped successfully", level="error")
                return await self._finalize(SessionStatus.FAILED)

            self._lookup_phase = True
            try:
                await self._run_carrier_lookup()
            finally:
                self._lookup_phase = False
            self._log(
                f"Session completed: {len(self._state.businesses)} businesses from "
                f"{len(self._state.completed_towns)} towns"
            )
            return await self._finalize(SessionStatus.COMPLETED)

    async def _enter_pause(self) -> ScrapeSummary:
        self._elapsed_before_run = self._elapsed()
        self._run_started = None
        self._state.transition(SessionStatus.PAUSED)
        try:
            await self._checkpoint()
        except CheckpointStoreError as exc:
            # A pause that cannot be persisted is not resumable.
            self._fatal = exc
            self._state.error_message = f"{type(exc).__name__}: {exc}"
            self._state.error_detail = "".join(traceback.format_exception(exc))
            return await self._finalize(SessionStatus.FAILED)
        self._log(
            f"Session paused with {self._state.total_towns - self._state.processed_towns} towns remaining"
        )
        return ScrapeSummary.from_state(self._state, duration_seconds=self._elapsed())

    async def _run_carrier_lookup(self) -> None:
        assert self._config is not None
        if not self._config.enable_provider_lookup or self._lookup_service is None:
            self._log("Carrier lookup disabled for this session")
            return

        phones = [record.phone for record in self._state.businesses if record.phone]
        self._log(f"Starting carrier lookup for {len(set(phones))} phone numbers")

        def on_progress(done: int, total: int) -> None:
            if done == total or done % LOOKUP_PROGRESS_LOG_EVERY == 0:
                self._log(f"Carrier lookup progress: {done}/{total}")

        results = await resolve_carriers(
            self._lookup_service,
            self._state.businesses,
            concurrency=self._config.simultaneous_lookups,
            on_progress=on_progress,
        )
        self._state.apply_carriers(results)

        failures = [(phone, result) for phone, result in results.items() if result.error]
        for phone, result in failures:
            try:
                await asyncio.to_thread(
                    self._retry_queue.enqueue,
                    RetryItemType.LOOKUP,
                    {"phone": phone, "error": result.error},
                    attempts=self._settings.lookup_max_attempts,
                )
            except CheckpointStoreError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "lookup_retry_record_failed",
                    session_id=self.session_id,
                    phone=phone,
                    error=str(exc),
                )
        if failures:
            self._log(f"Carrier lookup failed for {len(failures)} numbers", level="warning")

    async def _finalize(self, status: str) -> ScrapeSummary:
        if self._run_started is not None:
            self._elapsed_before_run = self._elapsed()
            self._run_started = None

        persisted = await self._save_final_results(status)
        if not persisted:
            status = SessionStatus.FAILED
        self._state.transition(status)
        summary = ScrapeSummary.from_state(self._state, duration_seconds=self._elapsed_before_run)

        if persisted:
            try:
                await asyncio.to_thread(self._store.delete_checkpoint, self.session_id)
            except CheckpointStoreError:
                logger.exception("Failed to delete checkpoint for session %s", self.session_id)
        else:
            self._log("Results could not be saved; checkpoint kept for recovery", level="error")
            try:
                await self._persist_snapshot()
            except CheckpointStoreError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "failed_state_not_saved",
                    session_id=self.session_id,
                    error=str(exc),
                )
        await self._flush_metrics()

        log_event(
            logger,
            logging.INFO,
            "session_finalized",
            session_id=self.session_id,
            **summary.to_dict(),
        )
        self._events.publish(
            CompleteEvent(
                session_id=self.session_id,
                status=status,
                summary=summary,
                businesses=list(self._state.businesses),
            )
        )
        self._events.close()
        return summary

    async def _save_final_results(self, status: str) -> bool:
        """
        Write results and the terminal snapshot before the state changes.
        Returns False when storage rejected them.
        """

        if self._sink is None:
            return True
        summary = replace(
            ScrapeSummary.from_state(self._state, duration_seconds=self._elapsed_before_run),
            status=status,
        )
        snapshot = self._state.snapshot()
        snapshot.update(status=status, finished_at=datetime.now(timezone.utc).isoformat())
        try:
            await asyncio.to_thread(
                self._sink.save_results,
                self.session_id,
                status=status,
                businesses=list(self._state.businesses),
                summary=summary,
                error_message=self._state.error_message,
            )
            await asyncio.to_thread(self._sink.update_state, self.session_id, snapshot)
        except CheckpointStoreError as exc:
            log_event(
                logger,
                logging.ERROR,
                "final_results_not_saved",
                session_id=self.session_id,
                status=status,
                error=f"{type(exc).__name__}: {exc}",
            )
            if self._fatal is None:
                self._fatal = exc
            if self._state.error_message is None:
                self._state.error_message = f"Results could not be saved: {type(exc).__name__}: {exc}"
            detail = "".join(traceback.format_exception(exc))
            self._state.error_detail = f"{self._state.error_detail}\n{detail}" if self._state.error_detail else detail
            return False
        return True

    def _fail(self, exc: BaseException) -> None:
        if self._fatal is None:
            self._fatal = exc
            log_event(
                logger,
                logging.ERROR,
                "session_fatal_error",
                session_id=self.session_id,
                error=f"{type(exc).__name__}: {exc}",
            )
        self._halt_reason = HaltReason.FATAL
        self._halt.set()

    # ------------------------------------------------------------------
    # Checkpoint + restore
    # ------------------------------------------------------------------

    def _remaining_towns(self) -> list[str]:
        assert self._config is not None
        finished = set(self._state.completed_towns) | set(self._state.failed_towns)
        return [town for town in self._config.towns if town not in finished]

    def _build_batch_state(self) -> BatchState:
        assert self._config is not None
        return BatchState(
            config=self._config.to_payload(),
            remaining_towns=self._remaining_towns(),
            completed_towns=list(self._state.completed_towns),
            failed_towns=dict(self._state.failed_towns),
            town_attempts=dict(self._town_attempts),
            businesses=[record.to_dict() for record in self._state.businesses],
            industry_failures=[failure.to_dict() for failure in self._state.industry_failures],
            in_flight=sorted(self._in_flight.values()),
        )

    async def _checkpoint(self, *, current_town: str | None = None) -> None:
        last_town, last_industry = self._last_position
        if current_town is None:
            current_town = last_town
        pending = await asyncio.to_thread(self._retry_queue.pending)
        checkpoint = Checkpoint(
            session_id=self.session_id,
            batch_state=self._build_batch_state(),
            current_town=current_town,
            current_industry=last_industry if current_town == last_town else None,
            processed_businesses=len(self._state.businesses),
            retry_queue=pending,
        )
        await asyncio.to_thread(self._store.save_checkpoint, checkpoint)
        self._state.mark_checkpointed()
        await self._persist_snapshot()
        await self._flush_metrics()

    async def _persist_snapshot(self) -> None:
        if self._sink is not None:
            await asyncio.to_thread(self._sink.update_state, self.session_id, self._state.snapshot())

    async def _flush_metrics(self) -> None:
        if self._metrics is None:
            return
        try:
            await asyncio.to_thread(self._metrics.flush)
        except CheckpointStoreError as exc:
            log_event(
                logger,
                logging.WARNING,
                "metrics_flush_failed",
                session_id=self.session_id,
                error=str(exc),
            )

    async def restore(self, checkpoint: Checkpoint) -> None:
        """
        Load cumulative results and the remaining town queue from a checkpoint
        without running anything. Leaves the session paused.
        """

        if self._state.status not in (SessionStatus.PENDING, SessionStatus.PAUSED):
            raise InvalidSessionTransitionError(self._state.status, SessionStatus.PAUSED)
        batch = checkpoint.batch_state
        config = ScrapeConfig.from_payload(batch.config)
        self._config = config

        state = self._state
        state.total_towns = len(config.towns)
        state.completed_towns = list(batch.completed_towns)
        state.failed_towns = dict(batch.failed_towns)
        state.businesses = [BusinessRecord.from_dict(row) for row in batch.businesses]
        state.industry_failures = [
            IndustryFailure(town=row["town"], industry=row["industry"], error=row.get("error", ""))
            for row in batch.industry_failures
        ]
        if state.status == SessionStatus.PENDING:
            # Restarted process: the session was paused when the checkpoint was taken.
            state.status = SessionStatus.PAUSED

        self._town_attempts = dict(batch.town_attempts)
        # remaining_towns is authoritative; queued navigation retries duplicate it.
        await asyncio.to_thread(
            self._store.dequeue_eligible_retries,
            self.session_id,
            _RESTORE_HORIZON,
            kinds=_NAVIGATION_KINDS,
        )
        self._fresh = deque(
            TownTask(
                town=town,
                industries=config.industries,
                attempt=self._town_attempts.get(town, 0),
            )
            for town in batch.remaining_towns
            if town not in state.completed_towns and town not in state.failed_towns
        )
        self._ready.clear()
        self._last_percent = state.progress_percent
        self._log(
            f"Resuming from checkpoint: {len(state.completed_towns)} towns done, "
            f"{len(self._fresh)} remaining"
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _elapsed(self) -> float:
        if self._run_started is None:
            return self._elapsed_before_run
        return self._elapsed_before_run + (self._clock() - self._run_started)

    def _estimate_remaining(self) -> float | None:
        remaining = self._state.total_towns - self._state.processed_towns
        if remaining <= 0:
            return 0.0
        if not self._town_durations:
            return None
        mean = sum(self._town_durations) / len(self._town_durations)
        return mean * remaining / max(1, self._worker_count)

    def _emit_progress(self, town: str | None) -> None:
        percent = max(self._last_percent, self._state.progress_percent)
        self._last_percent = percent
        self._events.publish(
            ProgressEvent(
                session_id=self.session_id,
                completed_towns=min(len(self._state.completed_towns), self._state.total_towns),
                failed_towns=len(self._state.failed_towns),
                total_towns=self._state.total_towns,
                percent=percent,
                businesses=len(self._state.businesses),
                elapsed_seconds=self._elapsed(),
                eta_seconds=self._estimate_remaining(),
                town=town,
            )
        )

    def _log(self, message: str, *, level: str = "info", town: str | None = None) -> None:
        entry = LogEntry(message=message, level=level, town=town)
        self._log_buffer.append(entry)
        logger.log(
            getattr(logging, level.upper(), logging.INFO),
            "[session %s] %s",
            self.session_id,
            message,
        )
        self._events.publish(LogEvent(session_id=self.session_id, entry=entry))

    def _log_from_worker(self, message: str, level: str, town: str | None) -> None:
        self._log(message, level=level, town=town)
