"""
Repository for scraping session lifecycle and scraped business rows.
"""

from __future__ import annotations

import uuid
from collections.abc import Collection, Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, delete, select, update
from sqlalchemy.orm import Session

from db.models.scraping_session import ScrapedBusiness, ScrapingSession, ScrapingSessionStatus


class ScrapingSessionRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_session(
        self,
        *,
        name: str,
        config: dict[str, Any],
        session_id: uuid.UUID | None = None,
    ) -> ScrapingSession:
        record = ScrapingSession(
            id=session_id or uuid.uuid4(),
            name=name,
            status=ScrapingSessionStatus.PENDING,
            config=config,
            progress=0,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def get_session(self, session_id: uuid.UUID) -> ScrapingSession | None:
        return self._session.get(ScrapingSession, session_id)

    def list_sessions(
        self,
        *,
        limit: int = 50,
        status: str | None = None,
    ) -> list[ScrapingSession]:
        stmt: Select[tuple[ScrapingSession]] = select(ScrapingSession)
        if status:
            stmt = stmt.where(ScrapingSession.status == status)
        stmt = stmt.order_by(ScrapingSession.created_at.desc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def update_state(
        self,
        *,
        session_id: uuid.UUID,
        status: str,
        progress: int,
        state: dict[str, Any],
        error_message: str | None = None,
    ) -> ScrapingSession | None:
        record = self.get_session(session_id)
        if record is None:
            return None
        now = datetime.now(timezone.utc)
        record.status = status
        record.progress = progress
        record.state = state
        if status == ScrapingSessionStatus.RUNNING and record.started_at is None:
            record.started_at = now
        if error_message is not None:
            record.error_message = error_message
        return record

    def finalize(
        self,
        *,
        session_id: uuid.UUID,
        status: str,
        summary: dict[str, Any],
        error_message: str | None = None,
    ) -> ScrapingSession | None:
        record = self.get_session(session_id)
        if record is None:
            return None
        record.status = status
        record.summary = summary
        record.completed_at = datetime.now(timezone.utc)
        if status == ScrapingSessionStatus.COMPLETED:
            record.progress = 100
        if error_message is not None:
            record.error_message = error_message
        return record

    def replace_businesses(
        self,
        *,
        session_id: uuid.UUID,
        rows: Iterable[dict[str, Any]],
    ) -> int:
        """
        Replace every business row of a session.
        Finalization may run more than once (stop, then carrier lookup).
        """
        self._session.execute(
            delete(ScrapedBusiness).where(ScrapedBusiness.session_id == session_id)
        )
        objects = [ScrapedBusiness(session_id=session_id, **row) for row in rows]
        self._session.add_all(objects)
        self._session.flush()
        return len(objects)

    def list_businesses(self, session_id: uuid.UUID) -> list[ScrapedBusiness]:
        stmt = (
            select(ScrapedBusiness)
            .where(ScrapedBusiness.session_id == session_id)
            .order_by(ScrapedBusiness.town, ScrapedBusiness.industry, ScrapedBusiness.name)
        )
        return list(self._session.scalars(stmt).all())

    def update_carriers(
        self,
        *,
        session_id: uuid.UUID,
        carriers_by_phone: dict[str, str],
    ) -> int:
        updated = 0
        for phone, carrier in carriers_by_phone.items():
            result = self._session.execute(
                update(ScrapedBusiness)
                .where(
                    ScrapedBusiness.session_id == session_id,
                    ScrapedBusiness.phone == phone,
                )
                .values(carrier=carrier)
            )
            updated += result.rowcount or 0
        return updated

    def mark_stale_running_failed(
        self,
        *,
        older_than: datetime,
        exclude: Collection[uuid.UUID] = (),
    ) -> Sequence[uuid.UUID]:
        """
        Fail `running` sessions that stopped reporting, e.g. after a crash.
        ``exclude`` holds sessions still alive in this process.
        """
        stmt = select(ScrapingSession.id).where(
            ScrapingSession.status == ScrapingSessionStatus.RUNNING,
            ScrapingSession.updated_at < older_than,
        )
        if exclude:
            stmt = stmt.where(ScrapingSession.id.not_in(list(exclude)))
        stale_ids = list(self._session.scalars(stmt).all())
        if stale_ids:
            self._session.execute(
                update(ScrapingSession)
                .where(ScrapingSession.id.in_(stale_ids))
                .values(
                    status=ScrapingSessionStatus.FAILED,
                    error_message="Session stopped reporting progress.",
                    completed_at=datetime.now(timezone.utc),
                )
            )
        return stale_ids

    def delete_session(self, session_id: uuid.UUID) -> bool:
        record = self.get_session(session_id)
        if record is None:
            return False
        self._session.delete(record)
        self._session.flush()
        return True
