"""
In-process metric buffer flushed to scraper_metrics at checkpoint time.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

import psutil

from db.models.scraper_metric import METRIC_TYPES, MetricType

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def write_metrics(self, session_id: str, rows: list[dict[str, Any]]) -> int: ...


class MetricsRecorder:
    def __init__(self, *, session_id: str, sink: MetricsSink | None = None) -> None:
        self._session_id = session_id
        self._sink = sink
        self._rows: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def record(
        self,
        metric_type: str,
        metric_name: str,
        metric_value: float,
        *,
        success: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if metric_type not in METRIC_TYPES:
            raise ValueError(
                f"Unsupported metric type {metric_type!r}; expected one of {sorted(METRIC_TYPES)}."
            )
        row = {
            "metric_type": metric_type,
            "metric_name": metric_name,
            "metric_value": float(metric_value),
            "success": success,
            "metadata": metadata,
        }
        with self._lock:
            self._rows.append(row)

    @contextmanager
    def timed(
        self,
        metric_type: str,
        metric_name: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Iterator[None]:
        """Record elapsed milliseconds; success is False if the block raises."""
        started = time.perf_counter()
        success = True
        try:
            yield
        except BaseException:
            success = False
            raise
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            self.record(metric_type, metric_name, elapsed_ms, success=success, metadata=metadata)

    def record_memory(self) -> float:
        rss_mb = psutil.Process().memory_info().rss / (1024 * 1024)
        self.record(MetricType.MEMORY, "rss_mb", round(rss_mb, 2))
        return rss_mb

    def pending(self) -> int:
        with self._lock:
            return len(self._rows)

    def drain(self) -> list[dict[str, Any]]:
        with self._lock:
            rows, self._rows = self._rows, []
        return rows

    def flush(self) -> int:
        """Hand buffered rows to the sink. Without a sink rows are discarded."""
        rows = self.drain()
        if not rows or self._sink is None:
            return 0
        return self._sink.write_metrics(self._session_id, rows)
