"""
Storage interfaces for session metadata and final result sets.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from app.scraper.types import BusinessRecord, ScrapeSummary


class SessionSink(ABC):
    """
    Session metadata and result persistence consumed by the orchestrator.
    """

    @abstractmethod
    def create_session(self, session_id: str, *, name: str, config: dict[str, Any]) -> None:
        """Register a new pending session."""

    @abstractmethod
    def get_session(self, session_id: str) -> dict[str, Any] | None:
        """Return the stored session row as a plain dict, or None."""

    @abstractmethod
    def list_sessions(self, *, limit: int = 50, status: str | None = None) -> list[dict[str, Any]]:
        """Most recent sessions first."""

    @abstractmethod
    def update_state(self, session_id: str, snapshot: dict[str, Any]) -> None:
        """Persist the latest SessionState snapshot (status, progress, counts)."""

    @abstractmethod
    def save_results(
        self,
        session_id: str,
        *,
        status: str,
        businesses: list[BusinessRecord],
        summary: ScrapeSummary,
        error_message: str | None = None,
    ) -> None:
        """Store the final record set and summary for a terminal session."""

    @abstractmethod
    def load_businesses(self, session_id: str) -> list[BusinessRecord]:
        """Return the stored record set."""

    @abstractmethod
    def update_carriers(self, session_id: str, carriers_by_phone: dict[str, str]) -> int:
        """Overwrite the carrier label of stored records by raw phone value."""

    @abstractmethod
    def delete_session(self, session_id: str) -> bool:
        """Delete a session and everything that hangs off it."""
