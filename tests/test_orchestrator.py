"""
tests/test_orchestrator.py

ScrapingOrchestrator end to end with fake browsers, a fake carrier lookup
client and in-memory stores.

Coverage
--------
- Completion: every town scraped, carriers resolved, checkpoint dropped
- Worker pool sized to min(simultaneous_towns, towns)
- Browser launch failures are requeued, then the town is failed
- Zero successful towns fails the session
- Pause → checkpoint → resume on a fresh orchestrator
- Stop keeps partial results and skips the lookup phase
- Pause and stop are rejected once the lookup phase has started
- Carrier lookups start only after every town has finished
- Checkpoints record the last town and industry worked on
- Checkpoint write failures are session-fatal
- Results that cannot be saved fail the session and keep the checkpoint
- Industry and lookup failures are recorded, never fatal
- Progress events never go backwards
"""

from __future__ import annotations

import uuid

import pytest

from app.scraper.checkpoint import Checkpoint
from app.scraper.config.models import ScraperSettings
from app.scraper.errors import CheckpointStoreError, InvalidSessionTransitionError
from app.scraper.events import CompleteEvent, LogEvent, ProgressEvent, Subscription
from app.scraper.metrics import MetricsRecorder
from app.scraper.orchestrator import ScrapingOrchestrator
from app.scraper.provider_lookup import ProviderLookupService
from app.scraper.storage import InMemoryCheckpointStore, InMemorySessionSink
from app.scraper.types import CARRIER_UNKNOWN, BusinessRecord, ScrapeConfig, SessionStatus
from db.models.scraper_retry_item import RetryItemType
from tests.fakes import FakeLauncher, FakeLookupClient, FakeScraperFactory


class FailingCheckpointStore(InMemoryCheckpointStore):
    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        raise CheckpointStoreError("database is locked")


class UnavailableResultsSink(InMemorySessionSink):
    def save_results(self, session_id: str, **kwargs) -> None:
        raise CheckpointStoreError("database unavailable")


def _config(*towns: str, industries: tuple[str, ...] = ("Plumbers",), **kwargs) -> ScrapeConfig:
    kwargs.setdefault("simultaneous_towns", 1)
    kwargs.setdefault("simultaneous_industries", 1)
    return ScrapeConfig(towns=towns, industries=industries, **kwargs)


@pytest.fixture()
def session_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture()
def build(
    session_id: str,
    settings: ScraperSettings,
    launcher: FakeLauncher,
    scrapers: FakeScraperFactory,
    checkpoint_store: InMemoryCheckpointStore,
    sink: InMemorySessionSink,
    lookup_service: ProviderLookupService,
):
    sink.create_session(session_id, name="test", config={})

    def _build(**overrides) -> ScrapingOrchestrator:
        options = dict(
            session_id=session_id,
            settings=settings,
            launcher=launcher,
            checkpoint_store=checkpoint_store,
            lookup_service=lookup_service,
            sink=sink,
            scraper_factory=scrapers,
        )
        options.update(overrides)
        return ScrapingOrchestrator(**options)

    return _build


async def _drain(subscription: Subscription) -> list:
    events = []
    async with subscription:
        async for event in subscription:
            events.append(event)
    return events


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


class TestCompletion:
    @pytest.mark.asyncio
    async def test_all_towns_scraped_and_carriers_resolved(
        self,
        build,
        scrapers: FakeScraperFactory,
        checkpoint_store: InMemoryCheckpointStore,
        sink: InMemorySessionSink,
        session_id: str,
    ) -> None:
        scrapers.results[("Polokwane", "Plumbers")] = [
            BusinessRecord(name="Ace", town="Polokwane", industry="Plumbers", phone="011 123 4567"),
            BusinessRecord(name="No Phone", town="Polokwane", industry="Plumbers"),
        ]
        scrapers.results[("Tzaneen", "Plumbers")] = [
            BusinessRecord(name="Best", town="Tzaneen", industry="Plumbers", phone="+27 82 123 4567"),
        ]
        orchestrator = build()

        summary = await orchestrator.start(_config("Polokwane", "Tzaneen", simultaneous_towns=2))

        assert summary.status == SessionStatus.COMPLETED
        assert summary.towns_completed == 2
        assert summary.businesses_total == 3
        carriers = {record.name: record.carrier for record in orchestrator.state.businesses}
        assert carriers == {"Ace": "Telkom", "No Phone": CARRIER_UNKNOWN, "Best": "Vodacom"}
        assert checkpoint_store.load_checkpoint(session_id) is None
        assert sink.get_session(session_id)["status"] == SessionStatus.COMPLETED
        assert len(sink.load_businesses(session_id)) == 3

    @pytest.mark.asyncio
    async def test_lookup_disabled(self, build, lookup_client: FakeLookupClient) -> None:
        orchestrator = build()
        summary = await orchestrator.start(_config("A", enable_provider_lookup=False))
        assert summary.status == SessionStatus.COMPLETED
        assert lookup_client.calls == []
        assert orchestrator.state.businesses[0].carrier == "unresolved"

    @pytest.mark.asyncio
    async def test_pool_is_sized_to_the_town_count(self, build, scrapers: FakeScraperFactory) -> None:
        scrapers.delay_seconds = 0.01
        orchestrator = build()
        await orchestrator.start(_config("A", "B", simultaneous_towns=5))
        assert orchestrator.peak_active_workers == 2

    @pytest.mark.asyncio
    async def test_workers_run_in_parallel(self, build, scrapers: FakeScraperFactory) -> None:
        scrapers.delay_seconds = 0.01
        orchestrator = build()
        await orchestrator.start(_config("A", "B", "C", "D", "E", simultaneous_towns=2))
        assert orchestrator.peak_active_workers == 2
        assert sorted(scrapers.towns_scraped()) == ["A", "B", "C", "D", "E"]

    @pytest.mark.asyncio
    async def test_lookups_start_after_every_town_finishes(
        self,
        build,
        scrapers: FakeScraperFactory,
        lookup_client: FakeLookupClient,
    ) -> None:
        towns = ("A", "B", "C", "D")
        for index, town in enumerate(towns):
            scrapers.results[(town, "Plumbers")] = [
                BusinessRecord(name=f"Biz {town}", town=town, industry="Plumbers", phone=f"011 123 456{index}"),
            ]
        scrapers.town_delays = {"A": 0.04, "B": 0.01, "C": 0.03, "D": 0.02}
        orchestrator = build()

        summary = await orchestrator.start(_config(*towns, simultaneous_towns=3))

        assert summary.status == SessionStatus.COMPLETED
        assert orchestrator.peak_active_workers == 3
        assert len(scrapers.finished_at) == 4
        assert len(lookup_client.started_at) == 4
        assert max(scrapers.finished_at) <= min(lookup_client.started_at)

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, build) -> None:
        orchestrator = build()
        await orchestrator.start(_config("A"))
        with pytest.raises(InvalidSessionTransitionError):
            await orchestrator.start(_config("A"))

    @pytest.mark.asyncio
    async def test_industry_failure_is_recorded_not_fatal(
        self,
        build,
        scrapers: FakeScraperFactory,
        checkpoint_store: InMemoryCheckpointStore,
        session_id: str,
    ) -> None:
        scrapers.failures.add(("A", "Dentists"))
        orchestrator = build()
        summary = await orchestrator.start(_config("A", industries=("Plumbers", "Dentists")))

        assert summary.status == SessionStatus.COMPLETED
        assert summary.industry_failures == 1
        kinds = [item.kind for item in checkpoint_store.pending_retries(session_id)]
        assert kinds == [RetryItemType.EXTRACTION]

    @pytest.mark.asyncio
    async def test_lookup_failures_are_recorded(
        self,
        build,
        scrapers: FakeScraperFactory,
        lookup_client: FakeLookupClient,
        checkpoint_store: InMemoryCheckpointStore,
        session_id: str,
    ) -> None:
        lookup_client.failing.add("0111234567")
        scrapers.results[("A", "Plumbers")] = [
            BusinessRecord(name="Ace", town="A", industry="Plumbers", phone="011 123 4567"),
        ]
        orchestrator = build()
        summary = await orchestrator.start(_config("A"))

        assert summary.status == SessionStatus.COMPLETED
        assert summary.lookup_failures == 1
        assert orchestrator.state.businesses[0].carrier == CARRIER_UNKNOWN
        kinds = [item.kind for item in checkpoint_store.pending_retries(session_id)]
        assert kinds == [RetryItemType.LOOKUP]

    @pytest.mark.asyncio
    async def test_metrics_are_flushed(self, build, session_id: str) -> None:
        written: list[dict] = []

        class ListSink:
            def write_metrics(self, _session_id: str, rows: list[dict]) -> int:
                written.extend(rows)
                return len(rows)

        orchestrator = build(metrics=MetricsRecorder(session_id=session_id, sink=ListSink()))
        await orchestrator.start(_config("A"))
        assert {row["metric_type"] for row in written} >= {"extraction", "memory"}


# ---------------------------------------------------------------------------
# Browser failures
# ---------------------------------------------------------------------------


class TestBrowserFailures:
    @pytest.mark.asyncio
    async def test_town_is_retried_after_a_launch_failure(self, build) -> None:
        launcher = FakeLauncher(fail_times=1)
        orchestrator = build(launcher=launcher)
        summary = await orchestrator.start(_config("A"))

        assert summary.status == SessionStatus.COMPLETED
        assert launcher.launch_count == 2
        assert orchestrator.state.failed_towns == {}

    @pytest.mark.asyncio
    async def test_town_fails_after_max_attempts(self, build, settings: ScraperSettings) -> None:
        launcher = FakeLauncher(always_fail=True)
        orchestrator = build(launcher=launcher)
        summary = await orchestrator.start(_config("A", "B"))

        assert summary.status == SessionStatus.FAILED
        assert set(summary.failed_towns) == {"A", "B"}
        assert launcher.launch_count == 2 * settings.max_town_attempts
        assert orchestrator.state.error_message == "No towns were scraped successfully."


# ---------------------------------------------------------------------------
# Pause / resume / stop
# ---------------------------------------------------------------------------


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_then_resume_on_a_fresh_orchestrator(
        self,
        build,
        scrapers: FakeScraperFactory,
        checkpoint_store: InMemoryCheckpointStore,
        session_id: str,
    ) -> None:
        first = build()

        async def pause() -> None:
            await first.pause()

        scrapers.hooks["A"] = pause
        paused = await first.start(_config("A", "B", "C"))

        assert paused.status == SessionStatus.PAUSED
        assert first.state.completed_towns == ["A"]
        checkpoint = checkpoint_store.load_checkpoint(session_id)
        assert checkpoint is not None
        assert checkpoint.batch_state.remaining_towns == ["B", "C"]
        assert checkpoint.batch_state.completed_towns == ["A"]

        scrapers.hooks.clear()
        second = build()
        summary = await second.resume(checkpoint)

        assert summary.status == SessionStatus.COMPLETED
        assert summary.towns_completed == 3
        assert summary.businesses_total == 3
        assert scrapers.towns_scraped() == ["A", "B", "C"]
        assert checkpoint_store.load_checkpoint(session_id) is None

    @pytest.mark.asyncio
    async def test_resume_on_the_paused_orchestrator(
        self,
        build,
        scrapers: FakeScraperFactory,
        checkpoint_store: InMemoryCheckpointStore,
        session_id: str,
    ) -> None:
        orchestrator = build()

        async def pause() -> None:
            await orchestrator.pause()

        scrapers.hooks["A"] = pause
        await orchestrator.start(_config("A", "B"))
        scrapers.hooks.clear()

        summary = await orchestrator.resume(checkpoint_store.load_checkpoint(session_id))
        assert summary.status == SessionStatus.COMPLETED
        assert orchestrator.state.completed_towns == ["A", "B"]

    @pytest.mark.asyncio
    async def test_resume_rejects_a_foreign_checkpoint(
        self,
        build,
        scrapers: FakeScraperFactory,
        checkpoint_store: InMemoryCheckpointStore,
        session_id: str,
    ) -> None:
        orchestrator = build()

        async def pause() -> None:
            await orchestrator.pause()

        scrapers.hooks["A"] = pause
        await orchestrator.start(_config("A", "B"))
        checkpoint = checkpoint_store.load_checkpoint(session_id)
        other = build(session_id=str(uuid.uuid4()))
        with pytest.raises(ValueError):
            await other.resume(checkpoint)

    @pytest.mark.asyncio
    async def test_pause_requires_running(self, build) -> None:
        with pytest.raises(InvalidSessionTransitionError):
            await build().pause()

    @pytest.mark.asyncio
    async def test_stop_keeps_partial_results(
        self,
        build,
        scrapers: FakeScraperFactory,
        lookup_client: FakeLookupClient,
        sink: InMemorySessionSink,
        session_id: str,
    ) -> None:
        orchestrator = build()

        async def stop() -> None:
            await orchestrator.stop()

        scrapers.results[("A", "Plumbers")] = [
            BusinessRecord(name="Ace", town="A", industry="Plumbers", phone="011 123 4567"),
        ]
        scrapers.hooks["A"] = stop
        summary = await orchestrator.start(_config("A", "B", "C"))

        assert summary.status == SessionStatus.STOPPED
        assert summary.towns_completed == 1
        assert summary.businesses_total == 1
        assert lookup_client.calls == []
        assert scrapers.towns_scraped() == ["A"]
        assert [record.name for record in sink.load_businesses(session_id)] == ["Ace"]

    @pytest.mark.asyncio
    async def test_stop_while_paused_finalizes_immediately(
        self,
        build,
        scrapers: FakeScraperFactory,
        checkpoint_store: InMemoryCheckpointStore,
        session_id: str,
    ) -> None:
        orchestrator = build()

        async def pause() -> None:
            await orchestrator.pause()

        scrapers.hooks["A"] = pause
        await orchestrator.start(_config("A", "B"))
        subscription = orchestrator.subscribe()

        await orchestrator.stop()

        assert orchestrator.state.status == SessionStatus.STOPPED
        assert checkpoint_store.load_checkpoint(session_id) is None
        events = await _drain(subscription)
        assert isinstance(events[-1], CompleteEvent)
        assert events[-1].status == SessionStatus.STOPPED

    @pytest.mark.asyncio
    async def test_pause_and_stop_rejected_during_lookups(
        self,
        build,
        scrapers: FakeScraperFactory,
        lookup_client: FakeLookupClient,
    ) -> None:
        orchestrator = build()
        rejected: list[str] = []
        phases: list[str | None] = []

        async def interrupt() -> None:
            phases.append(orchestrator.status()["phase"])
            for control in (orchestrator.pause, orchestrator.stop):
                try:
                    await control()
                except InvalidSessionTransitionError as exc:
                    rejected.append(exc.target)

        scrapers.results[("A", "Plumbers")] = [
            BusinessRecord(name="Ace", town="A", industry="Plumbers", phone="011 123 4567"),
        ]
        lookup_client.before_lookup = interrupt
        summary = await orchestrator.start(_config("A"))

        assert phases == ["carrier_lookup"]
        assert rejected == [SessionStatus.PAUSED, SessionStatus.STOPPED]
        assert summary.status == SessionStatus.COMPLETED
        assert orchestrator.state.businesses[0].carrier == "Telkom"
        assert orchestrator.in_lookup_phase is False
        assert orchestrator.status()["phase"] is None

    @pytest.mark.asyncio
    async def test_checkpoint_records_last_town_and_industry(
        self,
        build,
        scrapers: FakeScraperFactory,
        checkpoint_store: InMemoryCheckpointStore,
        session_id: str,
    ) -> None:
        orchestrator = build()

        async def pause() -> None:
            await orchestrator.pause()

        scrapers.hooks["A"] = pause
        summary = await orchestrator.start(
            _config("A", "B", industries=("Plumbers", "Dentists"), simultaneous_industries=1)
        )

        assert summary.status == SessionStatus.PAUSED
        checkpoint = checkpoint_store.load_checkpoint(session_id)
        assert checkpoint.current_town == "A"
        assert checkpoint.current_industry == "Dentists"

    @pytest.mark.asyncio
    async def test_stop_after_completion_is_rejected(self, build) -> None:
        orchestrator = build()
        await orchestrator.start(_config("A"))
        with pytest.raises(InvalidSessionTransitionError):
            await orchestrator.stop()


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------


class TestFatalErrors:
    @pytest.mark.asyncio
    async def test_checkpoint_failure_fails_the_session(self, build, scrapers: FakeScraperFactory) -> None:
        orchestrator = build(checkpoint_store=FailingCheckpointStore())
        summary = await orchestrator.start(_config("A", "B"))

        assert summary.status == SessionStatus.FAILED
        assert orchestrator.state.error_message.startswith("CheckpointStoreError")
        assert "database is locked" in orchestrator.state.error_detail
        assert scrapers.towns_scraped() == ["A"]

    @pytest.mark.asyncio
    async def test_unsaved_results_fail_the_session_and_keep_the_checkpoint(
        self,
        build,
        scrapers: FakeScraperFactory,
        checkpoint_store: InMemoryCheckpointStore,
        session_id: str,
    ) -> None:
        results_sink = UnavailableResultsSink()
        results_sink.create_session(session_id, name="test", config={})
        scrapers.results[("A", "Plumbers")] = [
            BusinessRecord(name="Ace", town="A", industry="Plumbers", phone="011 123 4567"),
        ]
        orchestrator = build(sink=results_sink)
        subscription = orchestrator.subscribe()

        summary = await orchestrator.start(_config("A"))

        assert summary.status == SessionStatus.FAILED
        assert orchestrator.state.status == SessionStatus.FAILED
        assert "database unavailable" in orchestrator.state.error_message
        assert "CheckpointStoreError" in orchestrator.state.error_detail
        assert results_sink.get_session(session_id)["status"] == SessionStatus.FAILED
        checkpoint = checkpoint_store.load_checkpoint(session_id)
        assert checkpoint is not None
        assert [row["name"] for row in checkpoint.batch_state.businesses] == ["Ace"]
        events = await _drain(subscription)
        assert isinstance(events[-1], CompleteEvent)
        assert events[-1].status == SessionStatus.FAILED


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class TestEvents:
    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_ends_complete(self, build) -> None:
        orchestrator = build()
        subscription = orchestrator.subscribe()
        await orchestrator.start(_config("A", "B", "C", "D", simultaneous_towns=2))
        events = await _drain(subscription)

        progress = [event for event in events if isinstance(event, ProgressEvent)]
        percents = [event.percent for event in progress]
        assert percents == sorted(percents)
        assert percents[-1] == 100
        assert progress[-1].eta_seconds == 0.0
        assert isinstance(events[-1], CompleteEvent)
        assert events[-1].summary.towns_completed == 4
        assert any(isinstance(event, LogEvent) for event in events)

    @pytest.mark.asyncio
    async def test_late_subscriber_sees_completion(self, build) -> None:
        orchestrator = build()
        await orchestrator.start(_config("A"))
        events = await _drain(orchestrator.subscribe())
        assert len(events) == 1
        assert isinstance(events[0], CompleteEvent)

    @pytest.mark.asyncio
    async def test_recent_logs_are_capped(self, build, settings: ScraperSettings) -> None:
        orchestrator = build()
        await orchestrator.start(_config(*[f"Town {n}" for n in range(12)]))
        logs = orchestrator.recent_logs()
        assert len(logs) == settings.log_buffer_size
        assert logs[-1].message.startswith("Session completed")

    @pytest.mark.asyncio
    async def test_status_snapshot(self, build) -> None:
        orchestrator = build()
        await orchestrator.start(_config("A"))
        status = orchestrator.status()
        assert status["status"] == SessionStatus.COMPLETED
        assert status["progress"] == 100
        assert status["active_workers"] == 0
        assert status["in_flight"] == []
        assert status["recent_logs"]
