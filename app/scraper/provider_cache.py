"""
Read-through carrier cache interfaces.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class ProviderCache(ABC):
    """
    Normalized phone number → carrier label.

    Implementations must make a single get/set atomic per key; concurrent
    lanes may read and write the same cache.
    """

    @abstractmethod
    def get(self, phone_number: str) -> str | None:
        """Return the cached carrier, or None on a miss or expired entry."""

    @abstractmethod
    def set(self, phone_number: str, carrier: str) -> None:
        """Insert or refresh one entry."""

    def get_many(self, phone_numbers: list[str]) -> dict[str, str]:
        found: dict[str, str] = {}
        for number in phone_numbers:
            carrier = self.get(number)
            if carrier is not None:
                found[number] = carrier
        return found


class InMemoryProviderCache(ProviderCache):
    def __init__(self, *, ttl_days: int | None = None) -> None:
        self._ttl = timedelta(days=ttl_days) if ttl_days else None
        self._entries: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, phone_number: str) -> str | None:
        with self._lock:
            entry = self._entries.get(phone_number)
        if entry is None:
            return None
        carrier, checked_at = entry
        if self._ttl is not None and datetime.now(timezone.utc) - checked_at > self._ttl:
            return None
        return carrier

    def set(self, phone_number: str, carrier: str) -> None:
        with self._lock:
            self._entries[phone_number] = (carrier, datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self._entries)
