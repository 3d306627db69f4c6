"""
Checkpoint payloads, the CheckpointStore contract and the RetryQueue.

The batch_state blob is versioned. ``BatchState.from_payload`` upgrades older
payloads step by step so a checkpoint written by an earlier release still
resumes.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from app.scraper.errors import CheckpointStoreError, RetryItemValidationError
from app.scraper.rate_limiter import BackoffPolicy
from db.models.scraper_retry_item import RETRY_ITEM_TYPES

CHECKPOINT_SCHEMA_VERSION = 2


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored time is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class RetryQueueItem:
    session_id: str
    kind: str
    payload: dict[str, Any]
    attempts: int = 0
    next_retry_at: datetime = field(default_factory=utcnow)
    item_id: str | None = None

    def __post_init__(self) -> None:
        if self.kind not in RETRY_ITEM_TYPES:
            raise RetryItemValidationError(
                f"Unsupported retry item kind {self.kind!r}; "
                f"expected one of {sorted(RETRY_ITEM_TYPES)}."
            )
        if not isinstance(self.payload, dict):
            raise RetryItemValidationError("Retry item payload must be a JSON object.")
        if self.attempts < 0:
            raise RetryItemValidationError("Retry item attempts cannot be negative.")
        object.__setattr__(self, "next_retry_at", as_utc(self.next_retry_at))

    def is_due(self, now: datetime) -> bool:
        return self.next_retry_at <= as_utc(now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.item_id,
            "kind": self.kind,
            "payload": self.payload,
            "attempts": self.attempts,
            "next_retry_at": self.next_retry_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, session_id: str, payload: Mapping[str, Any]) -> "RetryQueueItem":
        return cls(
            session_id=session_id,
            kind=str(payload.get("kind")),
            payload=dict(payload.get("payload") or {}),
            attempts=int(payload.get("attempts", 0)),
            next_retry_at=datetime.fromisoformat(str(payload["next_retry_at"])),
            item_id=payload.get("id"),
        )


def _upgrade_v1(payload: dict[str, Any]) -> dict[str, Any]:
    # v1 kept completed towns only; failure bookkeeping arrived in v2.
    upgraded = dict(payload)
    upgraded.setdefault("failed_towns", {})
    upgraded.setdefault("town_attempts", {})
    upgraded.setdefault("industry_failures", [])
    upgraded.setdefault("in_flight", [])
    upgraded["version"] = 2
    return upgraded


_UPGRADERS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _upgrade_v1,
}


@dataclass
class BatchState:
    """
    Everything needed to rebuild the town queue and cumulative results.
    """

    config: dict[str, Any]
    remaining_towns: list[str] = field(default_factory=list)
    completed_towns: list[str] = field(default_factory=list)
    failed_towns: dict[str, str] = field(default_factory=dict)
    town_attempts: dict[str, int] = field(default_factory=dict)
    businesses: list[dict[str, Any]] = field(default_factory=list)
    industry_failures: list[dict[str, Any]] = field(default_factory=list)
    in_flight: list[str] = field(default_factory=list)
    version: int = CHECKPOINT_SCHEMA_VERSION

    def to_payload(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "config": self.config,
            "remaining_towns": list(self.remaining_towns),
            "completed_towns": list(self.completed_towns),
            "failed_towns": dict(self.failed_towns),
            "town_attempts": dict(self.town_attempts),
            "businesses": list(self.businesses),
            "industry_failures": list(self.industry_failures),
            "in_flight": list(self.in_flight),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BatchState":
        data = dict(payload)
        version = int(data.get("version", 1))
        if version > CHECKPOINT_SCHEMA_VERSION:
            raise CheckpointStoreError(
                f"Checkpoint schema v{version} is newer than supported v{CHECKPOINT_SCHEMA_VERSION}."
            )
        while version < CHECKPOINT_SCHEMA_VERSION:
            upgrader = _UPGRADERS.get(version)
            if upgrader is None:
                raise CheckpointStoreError(f"No upgrade path from checkpoint schema v{version}.")
            data = upgrader(data)
            version = int(data["version"])

        if "config" not in data:
            raise CheckpointStoreError("Checkpoint batch state is missing the session config.")
        return cls(
            config=dict(data["config"]),
            remaining_towns=list(data.get("remaining_towns") or []),
            completed_towns=list(data.get("completed_towns") or []),
            failed_towns=dict(data.get("failed_towns") or {}),
            town_attempts={k: int(v) for k, v in (data.get("town_attempts") or {}).items()},
            businesses=list(data.get("businesses") or []),
            industry_failures=list(data.get("industry_failures") or []),
            in_flight=list(data.get("in_flight") or []),
            version=version,
        )


@dataclass(frozen=True)
class Checkpoint:
    session_id: str
    batch_state: BatchState
    current_town: str | None = None
    current_industry: str | None = None
    processed_businesses: int = 0
    retry_queue: list[RetryQueueItem] = field(default_factory=list)
    updated_at: datetime | None = None


class CheckpointStore(ABC):
    """
    Durable checkpoint + retry queue storage. One checkpoint per session.
    """

    @abstractmethod
    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Insert or overwrite the session's checkpoint."""

    @abstractmethod
    def load_checkpoint(self, session_id: str) -> Checkpoint | None:
        """Return the session's checkpoint, if any."""

    @abstractmethod
    def delete_checkpoint(self, session_id: str) -> None:
        """Drop the session's checkpoint; a no-op when none exists."""

    @abstractmethod
    def enqueue_retry(self, item: RetryQueueItem) -> RetryQueueItem:
        """Persist a retry item and return it with its assigned id."""

    @abstractmethod
    def dequeue_eligible_retries(
        self,
        session_id: str,
        now: datetime,
        *,
        kinds: Collection[str] | None = None,
    ) -> list[RetryQueueItem]:
        """Remove and return items whose next_retry_at is at or before ``now``."""

    @abstractmethod
    def next_retry_at(
        self,
        session_id: str,
        *,
        kinds: Collection[str] | None = None,
    ) -> datetime | None:
        """Earliest pending eligibility time, or None when nothing is queued."""

    @abstractmethod
    def pending_retries(self, session_id: str) -> list[RetryQueueItem]:
        """All queued items for a session, soonest first, without removing them."""

    @abstractmethod
    def clear_retries(self, session_id: str) -> None:
        """Drop every queued item for a session."""


class RetryQueue:
    """
    Session-scoped view over a CheckpointStore's retry items.

    Backoff comes from the shared BackoffPolicy so town, lookup and
    extraction retries all slow down the same way.
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        session_id: str,
        backoff: BackoffPolicy,
        max_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._session_id = session_id
        self._backoff = backoff
        self._max_attempts = max(1, max_attempts)
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def should_retry(self, attempts: int, *, max_attempts: int | None = None) -> bool:
        return attempts < (max_attempts or self._max_attempts)

    def enqueue(self, kind: str, payload: dict[str, Any], *, attempts: int = 1) -> RetryQueueItem:
        delay = self._backoff.delay_for(max(1, attempts))
        item = RetryQueueItem(
            session_id=self._session_id,
            kind=kind,
            payload=payload,
            attempts=attempts,
            next_retry_at=self._clock() + timedelta(seconds=delay),
            item_id=str(uuid.uuid4()),
        )
        return self._store.enqueue_retry(item)

    def record_failure(
        self,
        kind: str,
        payload: dict[str, Any],
        *,
        attempts: int,
        max_attempts: int | None = None,
    ) -> RetryQueueItem | None:
        """
        Requeue after the ``attempts``-th failure, or return None once the
        budget is spent.
        """

        if not self.should_retry(attempts, max_attempts=max_attempts):
            return None
        return self.enqueue(kind, payload, attempts=attempts)

    def dequeue_ready(self, *, kinds: Collection[str] | None = None) -> list[RetryQueueItem]:
        return self._store.dequeue_eligible_retries(self._session_id, self._clock(), kinds=kinds)

    def seconds_until_next(self, *, kinds: Collection[str] | None = None) -> float | None:
        next_at = self._store.next_retry_at(self._session_id, kinds=kinds)
        if next_at is None:
            return None
        return max(0.0, (as_utc(next_at) - self._clock()).total_seconds())

    def pending(self) -> list[RetryQueueItem]:
        return self._store.pending_retries(self._session_id)

    def counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.pending():
            counts[item.kind] = counts.get(item.kind, 0) + 1
        return counts

    def clear(self) -> None:
        self._store.clear_retries(self._session_id)
