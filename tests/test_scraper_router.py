"""
tests/test_scraper_router.py

HTTP surface of the scrape session router. The service dependency is
overridden with one built on in-memory stores and fakes; app.main is not
imported because it validates database settings at import time.

Coverage
--------
- Start, read, control, events, export and delete routes
- Pause during the carrier lookup phase answers 409
- Business-name lookup and workbook carrier lookup, including rejected uploads
"""

from __future__ import annotations

import functools
import io
import uuid
from collections.abc import AsyncIterator

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from openpyxl import Workbook, load_workbook

from app.api.routers import scraper_sessions_router
from app.scraper.config.models import ScraperSettings
from app.scraper.orchestrator import ScrapingOrchestrator
from app.scraper.provider_cache import InMemoryProviderCache
from app.scraper.storage import InMemoryCheckpointStore, InMemorySessionSink
from app.scraper.types import BusinessRecord, SessionStatus
from app.services.excel_export_service import XLSX_MEDIA_TYPE
from app.services.scrape_session_service import ScrapeSessionService, get_scrape_session_service
from tests.fakes import FakeBusinessSearch, FakeLauncher, FakeLookupClient, FakeScraperFactory

START_BODY = {
    "name": "Limpopo plumbers",
    "towns": ["Polokwane", "Tzaneen"],
    "industries": ["Plumbers"],
    "simultaneous_towns": 1,
    "simultaneous_industries": 1,
    "simultaneous_lookups": 1,
}


@pytest.fixture()
def service(
    settings: ScraperSettings,
    launcher: FakeLauncher,
    lookup_client: FakeLookupClient,
    scrapers: FakeScraperFactory,
    business_search: FakeBusinessSearch,
) -> ScrapeSessionService:
    return ScrapeSessionService(
        settings=settings,
        checkpoint_store=InMemoryCheckpointStore(),
        sink=InMemorySessionSink(),
        provider_cache=InMemoryProviderCache(),
        launcher=launcher,
        lookup_client=lookup_client,
        orchestrator_factory=functools.partial(ScrapingOrchestrator, scraper_factory=scrapers),
        business_search=business_search,
    )


@pytest_asyncio.fixture()
async def client(service: ScrapeSessionService) -> AsyncIterator[httpx.AsyncClient]:
    application = FastAPI()
    application.include_router(scraper_sessions_router)
    application.dependency_overrides[get_scrape_session_service] = lambda: service
    transport = httpx.ASGITransport(app=application)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


async def _finished_session(client: httpx.AsyncClient, service: ScrapeSessionService) -> str:
    response = await client.post("/scraper/sessions", json=START_BODY)
    assert response.status_code == 202
    session_id = response.json()["session_id"]
    await service.wait_for(session_id)
    return session_id


class TestStart:
    @pytest.mark.asyncio
    async def test_accepted(self, client: httpx.AsyncClient, service: ScrapeSessionService) -> None:
        response = await client.post("/scraper/sessions", json=START_BODY)
        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        uuid.UUID(body["session_id"])
        await service.wait_for(body["session_id"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "override",
        [
            {"simultaneous_towns": 9},
            {"simultaneous_industries": 0},
            {"simultaneous_lookups": 4},
            {"towns": []},
        ],
    )
    async def test_out_of_bounds_rejected(self, client: httpx.AsyncClient, override: dict) -> None:
        response = await client.post("/scraper/sessions", json={**START_BODY, **override})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_blank_towns_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/scraper/sessions", json={**START_BODY, "towns": ["  ", ""]})
        assert response.status_code == 400


class TestReadEndpoints:
    @pytest.mark.asyncio
    async def test_status(self, client: httpx.AsyncClient, service: ScrapeSessionService) -> None:
        session_id = await _finished_session(client, service)
        response = await client.get(f"/scraper/sessions/{session_id}")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["progress"] == 100
        assert body["completed_towns"] == 2

    @pytest.mark.asyncio
    async def test_list(self, client: httpx.AsyncClient, service: ScrapeSessionService) -> None:
        session_id = await _finished_session(client, service)
        response = await client.get("/scraper/sessions", params={"status": "completed"})
        assert response.status_code == 200
        assert [item["session_id"] for item in response.json()] == [session_id]

    @pytest.mark.asyncio
    async def test_businesses(self, client: httpx.AsyncClient, service: ScrapeSessionService) -> None:
        session_id = await _finished_session(client, service)
        response = await client.get(f"/scraper/sessions/{session_id}/businesses")
        assert response.status_code == 200
        assert sorted(item["town"] for item in response.json()) == ["Polokwane", "Tzaneen"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, client: httpx.AsyncClient) -> None:
        response = await client.get(f"/scraper/sessions/{uuid.uuid4()}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_malformed_session_id(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/scraper/sessions/not-a-uuid")
        assert response.status_code == 404


class TestControl:
    @pytest.mark.asyncio
    async def test_pause_finished_session_conflicts(
        self,
        client: httpx.AsyncClient,
        service: ScrapeSessionService,
    ) -> None:
        session_id = await _finished_session(client, service)
        response = await client.post(f"/scraper/sessions/{session_id}/pause")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_stop_running_session(
        self,
        client: httpx.AsyncClient,
        service: ScrapeSessionService,
        scrapers: FakeScraperFactory,
    ) -> None:
        response = await client.post("/scraper/sessions", json=START_BODY)
        session_id = response.json()["session_id"]

        async def stop() -> None:
            stopped = await client.post(f"/scraper/sessions/{session_id}/stop")
            assert stopped.status_code == 200

        scrapers.hooks["Polokwane"] = stop
        summary = await service.wait_for(session_id)
        assert summary.status == "stopped"

        lookup = await client.post(f"/scraper/sessions/{session_id}/carrier-lookup")
        assert lookup.status_code == 200
        assert lookup.json()["numbers_checked"] == 0

    @pytest.mark.asyncio
    async def test_pause_during_carrier_lookup_conflicts(
        self,
        client: httpx.AsyncClient,
        service: ScrapeSessionService,
        scrapers: FakeScraperFactory,
        lookup_client: FakeLookupClient,
    ) -> None:
        scrapers.results[("Polokwane", "Plumbers")] = [
            BusinessRecord(name="Ace", town="Polokwane", industry="Plumbers", phone="011 123 4567"),
        ]
        answers: list[httpx.Response] = []

        async def pause() -> None:
            session_id = service.live_session_ids()[0]
            answers.append(await client.get(f"/scraper/sessions/{session_id}"))
            answers.append(await client.post(f"/scraper/sessions/{session_id}/pause"))

        lookup_client.before_lookup = pause
        response = await client.post("/scraper/sessions", json=START_BODY)
        session_id = response.json()["session_id"]
        summary = await service.wait_for(session_id)

        status, paused = answers
        assert status.json()["phase"] == "carrier_lookup"
        assert paused.status_code == 409
        assert summary.status == SessionStatus.COMPLETED


class TestEventsExportDelete:
    @pytest.mark.asyncio
    async def test_event_stream_ends_with_complete(
        self,
        client: httpx.AsyncClient,
        service: ScrapeSessionService,
        scrapers: FakeScraperFactory,
    ) -> None:
        scrapers.delay_seconds = 0.05
        response = await client.post("/scraper/sessions", json=START_BODY)
        session_id = response.json()["session_id"]

        stream = await client.get(f"/scraper/sessions/{session_id}/events")

        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        assert "event: progress" in stream.text
        assert stream.text.rstrip().splitlines()[-2] == "event: complete"
        assert (await service.get_status(session_id))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_export(self, client: httpx.AsyncClient, service: ScrapeSessionService) -> None:
        session_id = await _finished_session(client, service)
        response = await client.get(f"/scraper/sessions/{session_id}/export")
        assert response.status_code == 200
        assert response.headers["content-type"] == XLSX_MEDIA_TYPE
        assert response.headers["content-disposition"] == (
            f'attachment; filename="Limpopo_plumbers_{session_id[:8]}.xlsx"'
        )
        assert response.content[:2] == b"PK"

    @pytest.mark.asyncio
    async def test_delete(self, client: httpx.AsyncClient, service: ScrapeSessionService) -> None:
        session_id = await _finished_session(client, service)
        assert (await client.delete(f"/scraper/sessions/{session_id}")).status_code == 204
        assert (await client.get(f"/scraper/sessions/{session_id}")).status_code == 404


# ---------------------------------------------------------------------------
# Lookups outside a session
# ---------------------------------------------------------------------------


def _xlsx(rows: list[list]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class TestStandaloneLookups:
    @pytest.mark.asyncio
    async def test_business_lookup(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/scraper/business-lookup", json={"query": "Ace Plumbing"})
        assert response.status_code == 200
        body = response.json()
        assert body["query"] == "Ace Plumbing"
        assert [row["carrier"] for row in body["results"]] == ["Telkom", "Vodacom", "unknown"]
        assert body["results"][0]["phone"] == "011 123 4567"

    @pytest.mark.asyncio
    async def test_blank_business_query_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/scraper/business-lookup", json={"query": "   "})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_workbook_lookup(self, client: httpx.AsyncClient) -> None:
        payload = _xlsx([["Name", "Phone"], ["Ace", "011 123 4567"], ["Best", "082 123 4567"]])
        response = await client.post(
            "/scraper/carrier-lookup/workbook",
            files={"file": ("leads.xlsx", payload, XLSX_MEDIA_TYPE)},
            params={"simultaneous_lookups": 1},
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == XLSX_MEDIA_TYPE
        assert response.headers["x-numbers-checked"] == "2"
        assert response.headers["x-lookup-failures"] == "0"
        assert response.headers["content-disposition"] == 'attachment; filename="leads_carriers.xlsx"'
        workbook = load_workbook(io.BytesIO(response.content))
        assert workbook.sheetnames == ["All Businesses", "Telkom", "Vodacom", "Summary"]

    @pytest.mark.asyncio
    async def test_workbook_lookup_rejects_other_file_types(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/scraper/carrier-lookup/workbook",
            files={"file": ("leads.csv", b"name,phone\n", "text/csv")},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_workbook_lookup_rejects_unreadable_workbook(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/scraper/carrier-lookup/workbook",
            files={"file": ("leads.xlsx", b"not a zip", XLSX_MEDIA_TYPE)},
        )
        assert response.status_code == 400
        assert "xlsx" in response.json()["detail"]
