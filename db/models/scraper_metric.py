"""
db/models/scraper_metric.py

Append-only performance samples recorded while a session runs.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, CheckConstraint, Float, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, CreatedAtMixin, JSONPayload

if TYPE_CHECKING:
    from db.models.scraping_session import ScrapingSession


class MetricType:
    NAVIGATION = "navigation"
    EXTRACTION = "extraction"
    LOOKUP = "lookup"
    MEMORY = "memory"


METRIC_TYPES: frozenset[str] = frozenset(
    {MetricType.NAVIGATION, MetricType.EXTRACTION, MetricType.LOOKUP, MetricType.MEMORY}
)


class ScraperMetric(Base, CreatedAtMixin):
    """No updated_at: rows are never modified after insert."""

    __tablename__ = "scraper_metrics"

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
    metric_type: Mapped[str] = mapped_column(String(32), nullable=False)
    metric_name: Mapped[str] = mapped_column(String(100), nullable=False)
    metric_value: Mapped[float] = mapped_column(Float, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # "metadata" is reserved on declarative classes.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSONPayload,
        nullable=True,
    )

    session: Mapped["ScrapingSession"] = relationship(
        "ScrapingSession",
        back_populates="metrics",
    )

    __table_args__ = (
        CheckConstraint(
            "metric_type IN ('navigation', 'extraction', 'lookup', 'memory')",
            name="ck_scraper_metrics_metric_type",
        ),
        Index("ix_scraper_metrics_session_type", "session_id", "metric_type"),
        Index("ix_scraper_metrics_created_at", "created_at"),
    )
