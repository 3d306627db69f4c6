"""
tests/test_browser_worker.py

BrowserWorker with a fake launcher and scraper factory.

Coverage
--------
- Records from every industry are merged and bound to the town
- An industry failure is reported, not raised
- Launch failures surface as BrowserInitError carrying the town
- Per-town teardown versus a browser kept across towns
- simultaneous_industries caps concurrent pages
"""

from __future__ import annotations

import asyncio

import pytest

from app.scraper.config.models import ScraperSettings
from app.scraper.errors import BrowserInitError
from app.scraper.metrics import MetricsRecorder
from app.scraper.types import BusinessRecord
from app.scraper.worker import BrowserWorker, WorkerState
from db.models.scraper_metric import MetricType
from tests.fakes import FakeLauncher, FakeScraperFactory


def _worker(
    settings: ScraperSettings,
    launcher: FakeLauncher,
    scrapers: FakeScraperFactory,
    **kwargs,
) -> BrowserWorker:
    return BrowserWorker(1, launcher=launcher, settings=settings, scraper_factory=scrapers, **kwargs)


class TestProcessTown:
    @pytest.mark.asyncio
    async def test_merges_industries(
        self,
        settings: ScraperSettings,
        launcher: FakeLauncher,
        scrapers: FakeScraperFactory,
    ) -> None:
        result = await _worker(settings, launcher, scrapers).process_town(
            "Polokwane", ["Plumbers", "Dentists"], simultaneous_industries=2
        )
        assert result.town == "Polokwane"
        assert sorted(record.industry for record in result.businesses) == ["Dentists", "Plumbers"]
        assert result.industry_failures == []
        assert result.industries_succeeded == 2
        assert result.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_records_are_bound_to_town_and_industry(
        self,
        settings: ScraperSettings,
        launcher: FakeLauncher,
        scrapers: FakeScraperFactory,
    ) -> None:
        scrapers.results[("Polokwane", "Plumbers")] = [
            BusinessRecord(name="Ace", town="elsewhere", industry="other")
        ]
        result = await _worker(settings, launcher, scrapers).process_town("Polokwane", ["Plumbers"])
        assert [(r.town, r.industry) for r in result.businesses] == [("Polokwane", "Plumbers")]

    @pytest.mark.asyncio
    async def test_industry_failure_is_isolated(
        self,
        settings: ScraperSettings,
        launcher: FakeLauncher,
        scrapers: FakeScraperFactory,
    ) -> None:
        scrapers.failures.add(("Polokwane", "Dentists"))
        logs: list[tuple[str, str, str | None]] = []
        worker = _worker(settings, launcher, scrapers, on_log=lambda *entry: logs.append(entry))

        result = await worker.process_town("Polokwane", ["Plumbers", "Dentists"])

        assert [record.industry for record in result.businesses] == ["Plumbers"]
        assert len(result.industry_failures) == 1
        failure = result.industry_failures[0]
        assert (failure.town, failure.industry) == ("Polokwane", "Dentists")
        assert "RuntimeError" in failure.error
        assert any(level == "error" and "Dentists" in message for message, level, _ in logs)

    @pytest.mark.asyncio
    async def test_every_industry_failing_still_returns(
        self,
        settings: ScraperSettings,
        launcher: FakeLauncher,
        scrapers: FakeScraperFactory,
    ) -> None:
        scrapers.failures.update({("A", "X"), ("A", "Y")})
        result = await _worker(settings, launcher, scrapers).process_town("A", ["X", "Y"])
        assert result.businesses == []
        assert len(result.industry_failures) == 2

    @pytest.mark.asyncio
    async def test_pages_are_closed(
        self,
        settings: ScraperSettings,
        launcher: FakeLauncher,
        scrapers: FakeScraperFactory,
    ) -> None:
        scrapers.failures.add(("A", "Y"))
        await _worker(settings, launcher, scrapers).process_town("A", ["X", "Y"])
        pages = launcher.sessions[0].pages
        assert len(pages) == 2
        assert all(page.closed for page in pages)

    @pytest.mark.asyncio
    async def test_extraction_metrics(
        self,
        settings: ScraperSettings,
        launcher: FakeLauncher,
        scrapers: FakeScraperFactory,
    ) -> None:
        scrapers.failures.add(("A", "Y"))
        metrics = MetricsRecorder(session_id="s")
        await _worker(settings, launcher, scrapers, metrics=metrics).process_town("A", ["X", "Y"])
        rows = [row for row in metrics.drain() if row["metric_type"] == MetricType.EXTRACTION]
        assert sorted(row["success"] for row in rows) == [False, True]


class TestBrowserLifecycle:
    @pytest.mark.asyncio
    async def test_launch_failure_raises_browser_init_error(
        self,
        settings: ScraperSettings,
        scrapers: FakeScraperFactory,
    ) -> None:
        worker = _worker(settings, FakeLauncher(always_fail=True), scrapers)
        with pytest.raises(BrowserInitError) as excinfo:
            await worker.process_town("Tzaneen", ["Plumbers"])
        assert excinfo.value.town == "Tzaneen"
        assert worker.state == WorkerState.ERROR
        assert scrapers.calls == []

    @pytest.mark.asyncio
    async def test_teardown_per_town(
        self,
        settings: ScraperSettings,
        launcher: FakeLauncher,
        scrapers: FakeScraperFactory,
    ) -> None:
        worker = _worker(settings, launcher, scrapers)
        await worker.process_town("A", ["X"])
        await worker.process_town("B", ["X"])
        assert launcher.launch_count == 2
        assert all(session.closed for session in launcher.sessions)
        assert worker.state == WorkerState.IDLE

    @pytest.mark.asyncio
    async def test_browser_kept_across_towns(
        self,
        launcher: FakeLauncher,
        scrapers: FakeScraperFactory,
    ) -> None:
        settings = ScraperSettings(browser_warmup_seconds=0.0, teardown_browser_per_town=False)
        worker = _worker(settings, launcher, scrapers)
        await worker.process_town("A", ["X"])
        await worker.process_town("B", ["X"])
        assert launcher.launch_count == 1
        assert not launcher.sessions[0].closed
        await worker.close()
        assert launcher.sessions[0].closed


class TestIndustryConcurrency:
    @pytest.mark.asyncio
    async def test_simultaneous_industries_caps_open_scrapes(
        self,
        settings: ScraperSettings,
        launcher: FakeLauncher,
        scrapers: FakeScraperFactory,
    ) -> None:
        active = 0
        peak = 0

        async def track() -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        scrapers.hooks["A"] = track
        await _worker(settings, launcher, scrapers).process_town(
            "A", ["V", "W", "X", "Y", "Z"], simultaneous_industries=2
        )
        assert peak == 2
        assert len(scrapers.calls) == 5
