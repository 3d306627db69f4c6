"""
SQLAlchemy-backed scraper storage.

Each call opens its own Session from the factory so adapters are safe to use
from worker threads (asyncio.to_thread). Failures roll back and surface as
typed scraper errors.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Collection
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.scraper.checkpoint import BatchState, Checkpoint, CheckpointStore, RetryQueueItem, as_utc
from app.scraper.errors import CheckpointStoreError, ProviderCacheError
from app.scraper.provider_cache import ProviderCache
from app.scraper.storage.base import SessionSink
from app.scraper.types import BusinessRecord, ScrapeSummary
from db.models.scraper_retry_item import ScraperRetryItem
from db.models.scraping_session import ScrapingSession
from db.repositories.checkpoint_repository import CheckpointRepository
from db.repositories.metrics_repository import MetricsRepository
from db.repositories.provider_cache_repository import ProviderCacheRepository
from db.repositories.scraping_session_repository import ScrapingSessionRepository

SessionFactory = Callable[[], Session]


def _uuid(session_id: str) -> uuid.UUID:
    return session_id if isinstance(session_id, uuid.UUID) else uuid.UUID(str(session_id))


def _to_item(row: ScraperRetryItem) -> RetryQueueItem:
    return RetryQueueItem(
        session_id=str(row.session_id),
        kind=row.item_type,
        payload=dict(row.item_data or {}),
        attempts=row.attempts,
        next_retry_at=as_utc(row.next_retry_time),
        item_id=str(row.id),
    )


class SQLAlchemyCheckpointStore(CheckpointStore):
    def __init__(self, *, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._session_factory() as db:
            try:
                CheckpointRepository(db).upsert_checkpoint(
                    session_id=_uuid(checkpoint.session_id),
                    current_town=checkpoint.current_town,
                    current_industry=checkpoint.current_industry,
                    processed_businesses=checkpoint.processed_businesses,
                    retry_queue=[item.to_dict() for item in checkpoint.retry_queue],
                    batch_state=checkpoint.batch_state.to_payload(),
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to save checkpoint: {exc}") from exc

    def load_checkpoint(self, session_id: str) -> Checkpoint | None:
        with self._session_factory() as db:
            try:
                row = CheckpointRepository(db).get_checkpoint(_uuid(session_id))
            except SQLAlchemyError as exc:
                raise CheckpointStoreError(f"Failed to load checkpoint: {exc}") from exc
            if row is None:
                return None
            return Checkpoint(
                session_id=str(row.session_id),
                batch_state=BatchState.from_payload(row.batch_state or {}),
                current_town=row.current_town,
                current_industry=row.current_industry,
                processed_businesses=row.processed_businesses,
                retry_queue=[
                    RetryQueueItem.from_dict(str(row.session_id), item)
                    for item in row.retry_queue or []
                ],
                updated_at=as_utc(row.updated_at) if row.updated_at else None,
            )

    def delete_checkpoint(self, session_id: str) -> None:
        with self._session_factory() as db:
            try:
                CheckpointRepository(db).delete_checkpoint(_uuid(session_id))
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to delete checkpoint: {exc}") from exc

    def enqueue_retry(self, item: RetryQueueItem) -> RetryQueueItem:
        with self._session_factory() as db:
            try:
                row = CheckpointRepository(db).add_retry_item(
                    session_id=_uuid(item.session_id),
                    item_type=item.kind,
                    item_data=item.payload,
                    attempts=item.attempts,
                    next_retry_time=item.next_retry_at,
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to enqueue retry item: {exc}") from exc
            return _to_item(row)

    def dequeue_eligible_retries(
        self,
        session_id: str,
        now: datetime,
        *,
        kinds: Collection[str] | None = None,
    ) -> list[RetryQueueItem]:
        with self._session_factory() as db:
            try:
                rows = CheckpointRepository(db).pop_due_retry_items(
                    session_id=_uuid(session_id),
                    now=now,
                    item_types=kinds,
                )
                items = [_to_item(row) for row in rows]
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to dequeue retry items: {exc}") from exc
            return items

    def next_retry_at(
        self,
        session_id: str,
        *,
        kinds: Collection[str] | None = None,
    ) -> datetime | None:
        with self._session_factory() as db:
            try:
                value = CheckpointRepository(db).next_retry_time(
                    session_id=_uuid(session_id),
                    item_types=kinds,
                )
            except SQLAlchemyError as exc:
                raise CheckpointStoreError(f"Failed to read retry queue: {exc}") from exc
            return as_utc(value) if value is not None else None

    def pending_retries(self, session_id: str) -> list[RetryQueueItem]:
        with self._session_factory() as db:
            try:
                rows = CheckpointRepository(db).list_retry_items(_uuid(session_id))
            except SQLAlchemyError as exc:
                raise CheckpointStoreError(f"Failed to read retry queue: {exc}") from exc
            return [_to_item(row) for row in rows]

    def clear_retries(self, session_id: str) -> None:
        with self._session_factory() as db:
            try:
                CheckpointRepository(db).clear_retry_items(_uuid(session_id))
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to clear retry queue: {exc}") from exc


class SQLAlchemySessionSink(SessionSink):
    def __init__(self, *, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def create_session(self, session_id: str, *, name: str, config: dict[str, Any]) -> None:
        with self._session_factory() as db:
            try:
                ScrapingSessionRepository(db).create_session(
                    name=name,
                    config=config,
                    session_id=_uuid(session_id),
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to create session: {exc}") from exc

    @staticmethod
    def _to_row(record: ScrapingSession) -> dict[str, Any]:
        return {
            "id": str(record.id),
            "name": record.name,
            "status": record.status,
            "config": record.config,
            "progress": record.progress,
            "state": record.state,
            "summary": record.summary,
            "error_message": record.error_message,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        with self._session_factory() as db:
            record = ScrapingSessionRepository(db).get_session(_uuid(session_id))
            return self._to_row(record) if record is not None else None

    def list_sessions(self, *, limit: int = 50, status: str | None = None) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            records = ScrapingSessionRepository(db).list_sessions(limit=limit, status=status)
            return [self._to_row(record) for record in records]

    def update_state(self, session_id: str, snapshot: dict[str, Any]) -> None:
        with self._session_factory() as db:
            try:
                ScrapingSessionRepository(db).update_state(
                    session_id=_uuid(session_id),
                    status=snapshot["status"],
                    progress=int(snapshot["progress"]),
                    state=snapshot,
                    error_message=snapshot.get("error_message"),
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to update session state: {exc}") from exc

    def save_results(
        self,
        session_id: str,
        *,
        status: str,
        businesses: list[BusinessRecord],
        summary: ScrapeSummary,
        error_message: str | None = None,
    ) -> None:
        with self._session_factory() as db:
            repository = ScrapingSessionRepository(db)
            try:
                repository.replace_businesses(
                    session_id=_uuid(session_id),
                    rows=(
                        {
                            "name": record.name,
                            "phone": record.phone,
                            "address": record.address,
                            "town": record.town,
                            "industry": record.industry,
                            "maps_url": record.maps_url,
                            "carrier": record.carrier,
                        }
                        for record in businesses
                    ),
                )
                repository.finalize(
                    session_id=_uuid(session_id),
                    status=status,
                    summary=summary.to_dict(),
                    error_message=error_message,
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to save session results: {exc}") from exc

    def load_businesses(self, session_id: str) -> list[BusinessRecord]:
        with self._session_factory() as db:
            rows = ScrapingSessionRepository(db).list_businesses(_uuid(session_id))
            return [
                BusinessRecord(
                    name=row.name,
                    town=row.town,
                    industry=row.industry,
                    phone=row.phone,
                    address=row.address,
                    maps_url=row.maps_url,
                    carrier=row.carrier,
                )
                for row in rows
            ]

    def update_carriers(self, session_id: str, carriers_by_phone: dict[str, str]) -> int:
        with self._session_factory() as db:
            try:
                updated = ScrapingSessionRepository(db).update_carriers(
                    session_id=_uuid(session_id),
                    carriers_by_phone=carriers_by_phone,
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to update carriers: {exc}") from exc
            return updated

    def delete_session(self, session_id: str) -> bool:
        with self._session_factory() as db:
            try:
                deleted = ScrapingSessionRepository(db).delete_session(_uuid(session_id))
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to delete session: {exc}") from exc
            return deleted


class SQLAlchemyProviderCache(ProviderCache):
    def __init__(self, *, session_factory: SessionFactory, ttl_days: int | None = None) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(days=ttl_days) if ttl_days else None

    def _fresh_after(self) -> datetime | None:
        if self._ttl is None:
            return None
        return datetime.now(timezone.utc) - self._ttl

    def get(self, phone_number: str) -> str | None:
        return self.get_many([phone_number]).get(phone_number)

    def get_many(self, phone_numbers: list[str]) -> dict[str, str]:
        with self._session_factory() as db:
            try:
                return ProviderCacheRepository(db).get_many(
                    phone_numbers,
                    fresh_after=self._fresh_after(),
                )
            except SQLAlchemyError as exc:
                raise ProviderCacheError(f"Failed to read provider cache: {exc}") from exc

    def set(self, phone_number: str, carrier: str) -> None:
        with self._session_factory() as db:
            try:
                ProviderCacheRepository(db).upsert(phone_number=phone_number, carrier=carrier)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise ProviderCacheError(f"Failed to write provider cache: {exc}") from exc


class SQLAlchemyMetricsSink:
    def __init__(self, *, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def write_metrics(self, session_id: str, rows: list[dict[str, Any]]) -> int:
        with self._session_factory() as db:
            try:
                written = MetricsRepository(db).insert_many(session_id=_uuid(session_id), rows=rows)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise CheckpointStoreError(f"Failed to write metrics: {exc}") from exc
            return written
