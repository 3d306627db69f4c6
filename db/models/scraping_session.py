"""
db/models/scraping_session.py

Scraping session and the business records it produced.
A session is one end-to-end run across a configured town/industry set.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, CreatedAtMixin, JSONPayload, TimestampMixin

if TYPE_CHECKING:
    from db.models.scraper_checkpoint import ScraperCheckpoint
    from db.models.scraper_metric import ScraperMetric
    from db.models.scraper_retry_item import ScraperRetryItem


class ScrapingSessionStatus:
    """Persisted lifecycle values for a scraping session."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


SESSION_STATUSES: tuple[str, ...] = (
    ScrapingSessionStatus.PENDING,
    ScrapingSessionStatus.RUNNING,
    ScrapingSessionStatus.PAUSED,
    ScrapingSessionStatus.COMPLETED,
    ScrapingSessionStatus.STOPPED,
    ScrapingSessionStatus.FAILED,
)


class ScrapingSession(Base, TimestampMixin):
    """
    Session metadata plus the final summary.

    config holds the submitted ScrapeConfig payload; state holds the latest
    status snapshot (counts, failed towns) so the status endpoint can answer
    for sessions that are no longer live in this process.
    """

    __tablename__ = "scraping_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ScrapingSessionStatus.PENDING,
        comment="pending → running → (paused ⇄ running) → completed | stopped | failed",
    )
    config: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
    )
    progress: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    state: Mapped[dict[str, Any] | None] = mapped_column(
        JSONPayload,
        nullable=True,
    )
    summary: Mapped[dict[str, Any] | None] = mapped_column(
        JSONPayload,
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    businesses: Mapped[list["ScrapedBusiness"]] = relationship(
        "ScrapedBusiness",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    checkpoint: Mapped["ScraperCheckpoint | None"] = relationship(
        "ScraperCheckpoint",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )
    retry_items: Mapped[list["ScraperRetryItem"]] = relationship(
        "ScraperRetryItem",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    metrics: Mapped[list["ScraperMetric"]] = relationship(
        "ScraperMetric",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'paused', 'completed', 'stopped', 'failed')",
            name="ck_scraping_sessions_status",
        ),
        Index("ix_scraping_sessions_status", "status"),
        Index("ix_scraping_sessions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ScrapingSession id={self.id} name={self.name!r} status={self.status!r}>"


class ScrapedBusiness(Base, CreatedAtMixin):
    __tablename__ = "scraped_businesses"

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
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    town: Mapped[str] = mapped_column(String(255), nullable=False)
    industry: Mapped[str] = mapped_column(String(255), nullable=False)
    maps_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    carrier: Mapped[str] = mapped_column(String(64), nullable=False)

    session: Mapped[ScrapingSession] = relationship(
        "ScrapingSession",
        back_populates="businesses",
    )

    __table_args__ = (
        Index("ix_scraped_businesses_session_id", "session_id"),
        Index("ix_scraped_businesses_session_carrier", "session_id", "carrier"),
    )
