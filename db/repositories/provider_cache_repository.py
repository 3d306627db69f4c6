"""
Persistence for the shared phone → carrier cache.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from db.base import utcnow
from db.models.provider_cache_entry import ProviderCacheEntry
from db.repositories.upsert import dialect_insert


class ProviderCacheRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_many(
        self,
        phone_numbers: Collection[str],
        *,
        fresh_after: datetime | None = None,
    ) -> dict[str, str]:
        if not phone_numbers:
            return {}
        stmt = select(ProviderCacheEntry).where(
            ProviderCacheEntry.phone_number.in_(list(phone_numbers))
        )
        if fresh_after is not None:
            stmt = stmt.where(ProviderCacheEntry.last_checked >= fresh_after)
        return {entry.phone_number: entry.carrier for entry in self._session.scalars(stmt).all()}

    def upsert(self, *, phone_number: str, carrier: str) -> None:
        checked_at = utcnow()
        stmt = dialect_insert(self._session, ProviderCacheEntry).values(
            phone_number=phone_number,
            carrier=carrier,
            last_checked=checked_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["phone_number"],
            set_={"carrier": carrier, "last_checked": checked_at},
        )
        self._session.execute(stmt)

    def purge_older_than(self, cutoff: datetime) -> int:
        result = self._session.execute(
            delete(ProviderCacheEntry).where(ProviderCacheEntry.last_checked < cutoff)
        )
        return result.rowcount or 0
