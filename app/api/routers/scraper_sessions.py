"""
app/api/routers/scraper_sessions.py

Scrape session endpoints.

POST   /scraper/sessions                        start a session
GET    /scraper/sessions                        recent sessions
GET    /scraper/sessions/{id}                   status snapshot + recent logs
POST   /scraper/sessions/{id}/pause|resume|stop lifecycle control
GET    /scraper/sessions/{id}/events            server-sent progress/log/complete events
GET    /scraper/sessions/{id}/businesses        extracted records
POST   /scraper/sessions/{id}/carrier-lookup    resolve carriers after a stop
GET    /scraper/sessions/{id}/export            xlsx download
DELETE /scraper/sessions/{id}                   delete session and dependants
POST   /scraper/business-lookup                 carriers for a business found by name
POST   /scraper/carrier-lookup/workbook         carriers for an uploaded xlsx, returned as xlsx

The router only maps service results and errors onto HTTP.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query, Response, UploadFile, status
from fastapi.responses import StreamingResponse

from app.api.dependencies import get_xlsx_upload
from app.scraper.errors import (
    BrowserInitError,
    CheckpointStoreError,
    InvalidSessionTransitionError,
    ScrapeConfigError,
    SessionNotFoundError,
    WorkbookFormatError,
)
from app.scraper.events import Subscription
from app.scraper.types import LOOKUP_CONCURRENCY_BOUNDS
from app.schemas.scraper import (
    BusinessLookupRequest,
    BusinessLookupResponse,
    BusinessMatchResponse,
    BusinessRecordResponse,
    CarrierLookupResponse,
    ScrapeSessionListItem,
    ScrapeSessionStartRequest,
    ScrapeSessionStartResponse,
    ScrapeSessionStatusResponse,
)
from app.services.excel_export_service import XLSX_MEDIA_TYPE, export_filename
from app.services.scrape_session_service import (
    ScrapeSessionService,
    get_scrape_session_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scraper", tags=["scraper"])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, SessionNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, InvalidSessionTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, CheckpointStoreError):
        logger.error("Session storage failure: %s", exc)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session storage is unavailable.",
        )
    if isinstance(exc, BrowserInitError):
        logger.error("Browser unavailable: %s", exc)
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Browser automation is unavailable.",
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


_HANDLED_ERRORS = (
    SessionNotFoundError,
    InvalidSessionTransitionError,
    CheckpointStoreError,
    ScrapeConfigError,
    BrowserInitError,
    WorkbookFormatError,
)


@router.post(
    "/sessions",
    response_model=ScrapeSessionStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_session(
    payload: ScrapeSessionStartRequest,
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> ScrapeSessionStartResponse:
    try:
        session_id = await service.start_session(payload.to_config(), name=payload.name)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return ScrapeSessionStartResponse(session_id=session_id, status="pending")


@router.get("/sessions", response_model=list[ScrapeSessionListItem])
async def list_sessions(
    limit: int = Query(default=50, ge=1, le=500),
    session_status: str | None = Query(default=None, alias="status"),
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> list[ScrapeSessionListItem]:
    try:
        rows = await service.list_sessions(limit=limit, status=session_status)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return [
        ScrapeSessionListItem(
            session_id=str(row["id"]),
            name=row["name"],
            status=row["status"],
            progress=row["progress"],
            created_at=row.get("created_at"),
            summary=row.get("summary"),
            error_message=row.get("error_message"),
        )
        for row in rows
    ]


@router.get("/sessions/{session_id}", response_model=ScrapeSessionStatusResponse)
async def get_session_status(
    session_id: str,
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> ScrapeSessionStatusResponse:
    try:
        snapshot = await service.get_status(session_id)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return ScrapeSessionStatusResponse.model_validate(snapshot)


@router.post("/sessions/{session_id}/pause", response_model=ScrapeSessionStatusResponse)
async def pause_session(
    session_id: str,
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> ScrapeSessionStatusResponse:
    try:
        snapshot = await service.pause_session(session_id)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return ScrapeSessionStatusResponse.model_validate(snapshot)


@router.post("/sessions/{session_id}/resume", response_model=ScrapeSessionStatusResponse)
async def resume_session(
    session_id: str,
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> ScrapeSessionStatusResponse:
    try:
        snapshot = await service.resume_session(session_id)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return ScrapeSessionStatusResponse.model_validate(snapshot)


@router.post("/sessions/{session_id}/stop", response_model=ScrapeSessionStatusResponse)
async def stop_session(
    session_id: str,
    wait: bool = Query(default=False, description="Return only after in-flight towns finish."),
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> ScrapeSessionStatusResponse:
    try:
        snapshot = await service.stop_session(session_id, wait=wait)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return ScrapeSessionStatusResponse.model_validate(snapshot)


def _format_sse(event_type: str, payload: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(payload, default=str)}\n\n"


async def _stream_events(subscription: Subscription) -> AsyncIterator[str]:
    async with subscription:
        async for event in subscription:
            yield _format_sse(event.type, event.to_dict())


@router.get("/sessions/{session_id}/events")
async def stream_session_events(
    session_id: str,
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> StreamingResponse:
    """
    Server-sent events. The stream ends after the ``complete`` event.
    """

    try:
        subscription = service.subscribe(session_id)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return StreamingResponse(
        _stream_events(subscription),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/sessions/{session_id}/businesses", response_model=list[BusinessRecordResponse])
async def list_session_businesses(
    session_id: str,
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> list[BusinessRecordResponse]:
    try:
        records = await service.get_results(session_id)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return [BusinessRecordResponse.from_record(record) for record in records]


@router.post("/sessions/{session_id}/carrier-lookup", response_model=CarrierLookupResponse)
async def lookup_session_carriers(
    session_id: str,
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> CarrierLookupResponse:
    try:
        outcome = await service.lookup_carriers(session_id)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return CarrierLookupResponse(
        session_id=outcome.session_id,
        numbers_checked=outcome.numbers_checked,
        records_updated=outcome.records_updated,
        failures=outcome.failures,
        carriers={phone: result.carrier for phone, result in outcome.results.items()},
    )


@router.get("/sessions/{session_id}/export")
async def export_session(
    session_id: str,
    by_carrier: bool = Query(default=True, description="Add one sheet per carrier."),
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> Response:
    try:
        session_name, payload = await service.export_workbook(session_id, by_carrier=by_carrier)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    filename = export_filename(session_name, session_id)
    return Response(
        content=payload,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_id: str,
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> Response:
    try:
        await service.delete_session(session_id)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/business-lookup", response_model=BusinessLookupResponse)
async def lookup_business(
    payload: BusinessLookupRequest,
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> BusinessLookupResponse:
    try:
        results = await service.lookup_business(payload.query)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    return BusinessLookupResponse(
        query=payload.query,
        results=[BusinessMatchResponse.from_result(result) for result in results],
    )


@router.post("/carrier-lookup/workbook")
async def lookup_workbook_carriers(
    file: UploadFile = Depends(get_xlsx_upload),
    simultaneous_lookups: int = Query(
        default=2,
        ge=LOOKUP_CONCURRENCY_BOUNDS[0],
        le=LOOKUP_CONCURRENCY_BOUNDS[1],
    ),
    service: ScrapeSessionService = Depends(get_scrape_session_service),
) -> Response:
    """
    Resolve carriers for the rows of an uploaded workbook. The response is the
    workbook re-exported with carrier sheets.
    """

    try:
        outcome = await service.lookup_workbook(
            await file.read(),
            filename=file.filename,
            concurrency=simultaneous_lookups,
        )
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc
    finally:
        await file.close()

    stem = (file.filename or "businesses").rsplit(".", 1)[0]
    return Response(
        content=outcome.payload,
        media_type=XLSX_MEDIA_TYPE,
        headers={
            "Content-Disposition": f'attachment; filename="{export_filename(stem, "carriers")}"',
            "X-Rows": str(outcome.rows),
            "X-Numbers-Checked": str(outcome.numbers_checked),
            "X-Lookup-Failures": str(outcome.failures),
        },
    )
