"""
db/repositories/checkpoint_repository.py

Persistence for scraper checkpoints and retry queue rows.

The caller controls commit/rollback; this repository never commits on its own.
"""

from __future__ import annotations

import uuid
from collections.abc import Collection
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from db.base import utcnow
from db.models.scraper_checkpoint import ScraperCheckpoint
from db.models.scraper_retry_item import ScraperRetryItem
from db.repositories.upsert import dialect_insert

_UPSERT_CONSTRAINT_COLUMNS = ["session_id"]


class CheckpointRepository:
    """
    Upsert semantics: a second save for the same ``session_id`` overwrites the
    existing row in place, keeping one checkpoint per session.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def upsert_checkpoint(
        self,
        *,
        session_id: uuid.UUID,
        current_town: str | None,
        current_industry: str | None,
        processed_businesses: int,
        retry_queue: list[Any],
        batch_state: dict[str, Any],
    ) -> None:
        values = {
            "current_town": current_town,
            "current_industry": current_industry,
            "processed_businesses": processed_businesses,
            "retry_queue": retry_queue,
            "batch_state": batch_state,
        }
        stmt = dialect_insert(self._session, ScraperCheckpoint).values(
            id=uuid.uuid4(),
            session_id=session_id,
            **values,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=_UPSERT_CONSTRAINT_COLUMNS,
            set_={**values, "updated_at": utcnow()},
        )
        self._session.execute(stmt)

    def get_checkpoint(self, session_id: uuid.UUID) -> ScraperCheckpoint | None:
        stmt = select(ScraperCheckpoint).where(ScraperCheckpoint.session_id == session_id)
        return self._session.scalars(stmt).first()

    def delete_checkpoint(self, session_id: uuid.UUID) -> int:
        result = self._session.execute(
            delete(ScraperCheckpoint).where(ScraperCheckpoint.session_id == session_id)
        )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    def add_retry_item(
        self,
        *,
        session_id: uuid.UUID,
        item_type: str,
        item_data: dict[str, Any],
        attempts: int,
        next_retry_time: datetime,
    ) -> ScraperRetryItem:
        item = ScraperRetryItem(
            session_id=session_id,
            item_type=item_type,
            item_data=item_data,
            attempts=attempts,
            next_retry_time=next_retry_time,
        )
        self._session.add(item)
        self._session.flush()
        return item

    def pop_due_retry_items(
        self,
        *,
        session_id: uuid.UUID,
        now: datetime,
        item_types: Collection[str] | None = None,
    ) -> list[ScraperRetryItem]:
        """Select and delete due rows, oldest eligibility first."""
        stmt = (
            select(ScraperRetryItem)
            .where(
                ScraperRetryItem.session_id == session_id,
                ScraperRetryItem.next_retry_time <= now,
            )
            .order_by(ScraperRetryItem.next_retry_time.asc())
        )
        if item_types:
            stmt = stmt.where(ScraperRetryItem.item_type.in_(list(item_types)))
        if self._session.get_bind().dialect.name == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)

        items = list(self._session.scalars(stmt).all())
        for item in items:
            self._session.delete(item)
        self._session.flush()
        return items

    def next_retry_time(
        self,
        *,
        session_id: uuid.UUID,
        item_types: Collection[str] | None = None,
    ) -> datetime | None:
        stmt = select(func.min(ScraperRetryItem.next_retry_time)).where(
            ScraperRetryItem.session_id == session_id
        )
        if item_types:
            stmt = stmt.where(ScraperRetryItem.item_type.in_(list(item_types)))
        return self._session.scalar(stmt)

    def list_retry_items(self, session_id: uuid.UUID) -> list[ScraperRetryItem]:
        stmt = (
            select(ScraperRetryItem)
            .where(ScraperRetryItem.session_id == session_id)
            .order_by(ScraperRetryItem.next_retry_time.asc())
        )
        return list(self._session.scalars(stmt).all())

    def count_retry_items(self, session_id: uuid.UUID) -> dict[str, int]:
        stmt = (
            select(ScraperRetryItem.item_type, func.count())
            .where(ScraperRetryItem.session_id == session_id)
            .group_by(ScraperRetryItem.item_type)
        )
        return {item_type: int(count) for item_type, count in self._session.execute(stmt).all()}

    def clear_retry_items(self, session_id: uuid.UUID) -> int:
        result = self._session.execute(
            delete(ScraperRetryItem).where(ScraperRetryItem.session_id == session_id)
        )
        return result.rowcount or 0
