"""
Append-only writer for scraper metrics.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.models.scraper_metric import ScraperMetric


class MetricsRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def insert_many(self, *, session_id: uuid.UUID, rows: Sequence[dict[str, Any]]) -> int:
        if not rows:
            return 0
        self._session.add_all(
            ScraperMetric(
                session_id=session_id,
                metric_type=row["metric_type"],
                metric_name=row["metric_name"],
                metric_value=float(row["metric_value"]),
                success=bool(row.get("success", True)),
                metadata_json=row.get("metadata"),
            )
            for row in rows
        )
        self._session.flush()
        return len(rows)

    def summarize(self, session_id: uuid.UUID) -> dict[str, dict[str, float]]:
        stmt = (
            select(
                ScraperMetric.metric_type,
                func.count(),
                func.avg(ScraperMetric.metric_value),
            )
            .where(ScraperMetric.session_id == session_id)
            .group_by(ScraperMetric.metric_type)
        )
        return {
            metric_type: {"count": float(count), "average": float(average or 0.0)}
            for metric_type, count, average in self._session.execute(stmt).all()
        }
