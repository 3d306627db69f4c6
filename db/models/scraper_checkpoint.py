"""
db/models/scraper_checkpoint.py

Resumable position of a scraping session. Exactly one row per session.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, JSONPayload, TimestampMixin

if TYPE_CHECKING:
    from db.models.scraping_session import ScrapingSession


class ScraperCheckpoint(Base, TimestampMixin):
    """
    retry_queue and batch_state are opaque versioned blobs owned by
    app.scraper.checkpoint; this table does not interpret them.
    """

    __tablename__ = "scraper_checkpoints"

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
    current_industry: Mapped[str | None] = mapped_column(String(255), nullable=True)
    current_town: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed_businesses: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    retry_queue: Mapped[list[Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        default=list,
    )
    batch_state: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        default=dict,
    )

    session: Mapped["ScrapingSession"] = relationship(
        "ScrapingSession",
        back_populates="checkpoint",
    )

    __table_args__ = (
        UniqueConstraint("session_id", name="uq_scraper_checkpoints_session_id"),
    )
