"""
Structured logging helpers for the scraper runtime.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """
    Emit one JSON log line with a stable key order.
    """

    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str, sort_keys=True))


@dataclass(frozen=True)
class LogEntry:
    message: str
    level: str = "info"
    town: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
            "town": self.town,
        }


class LogBuffer:
    """
    Capped ring buffer of operator-facing log lines, newest last.
    """

    def __init__(self, *, capacity: int = 15) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=max(1, capacity))
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
