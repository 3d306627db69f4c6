"""
Typed per-session event stream.

Subscribers each get their own queue; attaching or detaching never affects
what other subscribers receive.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from app.scraper.logging_utils import LogEntry
from app.scraper.types import BusinessRecord, ScrapeSummary


@dataclass(frozen=True)
class ProgressEvent:
    type: ClassVar[str] = "progress"

    session_id: str
    completed_towns: int
    failed_towns: int
    total_towns: int
    percent: int
    businesses: int
    elapsed_seconds: float
    eta_seconds: float | None
    town: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "session_id": self.session_id,
            "completed_towns": self.completed_towns,
            "failed_towns": self.failed_towns,
            "total_towns": self.total_towns,
            "percent": self.percent,
            "businesses": self.businesses,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "eta_seconds": None if self.eta_seconds is None else round(self.eta_seconds, 3),
            "town": self.town,
        }


@dataclass(frozen=True)
class LogEvent:
    type: ClassVar[str] = "log"

    session_id: str
    entry: LogEntry

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "session_id": self.session_id, **self.entry.to_dict()}


@dataclass(frozen=True)
class CompleteEvent:
    type: ClassVar[str] = "complete"

    session_id: str
    status: str
    summary: ScrapeSummary
    businesses: list[BusinessRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "session_id": self.session_id,
            "status": self.status,
            "summary": self.summary.to_dict(),
            "businesses": [record.to_dict() for record in self.businesses],
        }


ScrapeEvent = Union[ProgressEvent, LogEvent, CompleteEvent]

_CLOSED = object()


class Subscription:
    def __init__(self, stream: "EventStream") -> None:
        self._stream = stream
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._finished = False

    def _push(self, item: Any) -> None:
        if not self._finished:
            self._queue.put_nowait(item)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ScrapeEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        self._finished = True
        self._stream._detach(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventStream:
    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []
        self._closed = False
        self._final_event: CompleteEvent | None = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        if self._closed:
            # Late subscribers still see how the session ended.
            if self._final_event is not None:
                subscription._push(self._final_event)
            subscription._push(_CLOSED)
            return subscription
        self._subscribers.append(subscription)
        return subscription

    def publish(self, event: ScrapeEvent) -> None:
        if self._closed:
            return
        if isinstance(event, CompleteEvent):
            self._final_event = event
        for subscription in list(self._subscribers):
            subscription._push(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscribers:
            subscription._push(_CLOSED)
        self._subscribers.clear()

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
