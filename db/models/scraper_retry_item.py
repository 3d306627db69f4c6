"""
db/models/scraper_retry_item.py

Durable retry queue rows for failed scraper sub-operations.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, JSONPayload, TimestampMixin

if TYPE_CHECKING:
    from db.models.scraping_session import ScrapingSession


class RetryItemType:
    NAVIGATION = "navigation"
    LOOKUP = "lookup"
    EXTRACTION = "extraction"


RETRY_ITEM_TYPES: frozenset[str] = frozenset(
    {RetryItemType.NAVIGATION, RetryItemType.LOOKUP, RetryItemType.EXTRACTION}
)


class ScraperRetryItem(Base, TimestampMixin):
    __tablename__ = "scraper_retry_queue"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("scraping_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    item_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="navigation, lookup, extraction",
    )
    item_data: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    next_retry_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    session: Mapped["ScrapingSession"] = relationship(
        "ScrapingSession",
        back_populates="retry_items",
    )

    __table_args__ = (
        CheckConstraint(
            "item_type IN ('navigation', 'lookup', 'extraction')",
            name="ck_scraper_retry_queue_item_type",
        ),
        Index("ix_scraper_retry_queue_session_next_retry", "session_id", "next_retry_time"),
    )
