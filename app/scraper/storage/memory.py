"""
In-process storage used by the CLI's --no-db mode and by tests.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Collection
from datetime import datetime, timezone
from typing import Any

from app.scraper.checkpoint import Checkpoint, CheckpointStore, RetryQueueItem
from app.scraper.storage.base import SessionSink
from app.scraper.types import BusinessRecord, ScrapeSummary, SessionStatus


class InMemoryCheckpointStore(CheckpointStore):
    def __init__(self) -> None:
        self._checkpoints: dict[str, Checkpoint] = {}
        self._retries: dict[str, list[RetryQueueItem]] = {}
        self._lock = threading.Lock()

    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            self._checkpoints[checkpoint.session_id] = copy.deepcopy(checkpoint)

    def load_checkpoint(self, session_id: str) -> Checkpoint | None:
        with self._lock:
            checkpoint = self._checkpoints.get(session_id)
            return copy.deepcopy(checkpoint) if checkpoint is not None else None

    def delete_checkpoint(self, session_id: str) -> None:
        with self._lock:
            self._checkpoints.pop(session_id, None)

    def enqueue_retry(self, item: RetryQueueItem) -> RetryQueueItem:
        with self._lock:
            self._retries.setdefault(item.session_id, []).append(item)
        return item

    def dequeue_eligible_retries(
        self,
        session_id: str,
        now: datetime,
        *,
        kinds: Collection[str] | None = None,
    ) -> list[RetryQueueItem]:
        with self._lock:
            items = self._retries.get(session_id, [])
            due = [
                item
                for item in items
                if item.is_due(now) and (not kinds or item.kind in kinds)
            ]
            self._retries[session_id] = [item for item in items if item not in due]
        return sorted(due, key=lambda item: item.next_retry_at)

    def next_retry_at(
        self,
        session_id: str,
        *,
        kinds: Collection[str] | None = None,
    ) -> datetime | None:
        with self._lock:
            times = [
                item.next_retry_at
                for item in self._retries.get(session_id, [])
                if not kinds or item.kind in kinds
            ]
        return min(times) if times else None

    def pending_retries(self, session_id: str) -> list[RetryQueueItem]:
        with self._lock:
            items = list(self._retries.get(session_id, []))
        return sorted(items, key=lambda item: item.next_retry_at)

    def clear_retries(self, session_id: str) -> None:
        with self._lock:
            self._retries.pop(session_id, None)


class InMemorySessionSink(SessionSink):
    def __init__(self) -> None:
        self._sessions: dict[str, dict[str, Any]] = {}
        self._businesses: dict[str, list[BusinessRecord]] = {}
        self._lock = threading.Lock()

    def create_session(self, session_id: str, *, name: str, config: dict[str, Any]) -> None:
        now = datetime.now(timezone.utc)
        with self._lock:
            self._sessions[session_id] = {
                "id": session_id,
                "name": name,
                "status": SessionStatus.PENDING,
                "config": config,
                "progress": 0,
                "state": None,
                "summary": None,
                "error_message": None,
                "created_at": now,
                "updated_at": now,
            }

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._sessions.get(session_id)
            return dict(row) if row is not None else None

    def list_sessions(self, *, limit: int = 50, status: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                dict(row)
                for row in self._sessions.values()
                if status is None or row["status"] == status
            ]
        rows.sort(key=lambda row: row["created_at"], reverse=True)
        return rows[: max(1, limit)]

    def update_state(self, session_id: str, snapshot: dict[str, Any]) -> None:
        with self._lock:
            row = self._sessions.get(session_id)
            if row is None:
                return
            row.update(
                status=snapshot["status"],
                progress=snapshot["progress"],
                state=snapshot,
                updated_at=datetime.now(timezone.utc),
            )
            if snapshot.get("error_message"):
                row["error_message"] = snapshot["error_message"]

    def save_results(
        self,
        session_id: str,
        *,
        status: str,
        businesses: list[BusinessRecord],
        summary: ScrapeSummary,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            row = self._sessions.get(session_id)
            if row is not None:
                row.update(status=status, summary=summary.to_dict())
                if error_message is not None:
                    row["error_message"] = error_message
            self._businesses[session_id] = list(businesses)

    def load_businesses(self, session_id: str) -> list[BusinessRecord]:
        with self._lock:
            return list(self._businesses.get(session_id, []))

    def update_carriers(self, session_id: str, carriers_by_phone: dict[str, str]) -> int:
        updated = 0
        with self._lock:
            records = self._businesses.get(session_id, [])
            for index, record in enumerate(records):
                if record.phone and record.phone in carriers_by_phone:
                    records[index] = record.with_carrier(carriers_by_phone[record.phone])
                    updated += 1
        return updated

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            self._businesses.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None


