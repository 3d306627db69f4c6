"""
Shared scraper runtime data models.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from app.scraper.errors import InvalidSessionTransitionError, ScrapeConfigError

CARRIER_UNRESOLVED = "unresolved"
CARRIER_UNKNOWN = "unknown"

TOWN_CONCURRENCY_BOUNDS = (1, 5)
INDUSTRY_CONCURRENCY_BOUNDS = (1, 3)
LOOKUP_CONCURRENCY_BOUNDS = (1, 3)


def _clean_names(values: Iterable[str], *, field_name: str) -> tuple[str, ...]:
    if isinstance(values, str):
        raise ScrapeConfigError(f"{field_name} must be a list of names, not a string.")
    cleaned: list[str] = []
    seen: set[str] = set()
    for raw in values:
        if not isinstance(raw, str):
            raise ScrapeConfigError(f"{field_name} entries must be strings, got {type(raw).__name__}.")
        name = " ".join(raw.split())
        key = name.lower()
        if not name or key in seen:
            continue
        seen.add(key)
        cleaned.append(name)
    if not cleaned:
        raise ScrapeConfigError(f"{field_name} must contain at least one non-blank name.")
    return tuple(cleaned)


def _check_bounds(field_name: str, value: object, bounds: tuple[int, int]) -> None:
    low, high = bounds
    if isinstance(value, bool) or not isinstance(value, int):
        raise ScrapeConfigError(f"{field_name} must be an integer between {low} and {high}.")
    if not low <= value <= high:
        raise ScrapeConfigError(f"{field_name} must be between {low} and {high}, got {value}.")


@dataclass(frozen=True)
class ScrapeConfig:
    """
    Immutable per-session scrape request.

    Concurrency knobs are bounded to stay under the map provider's and the
    carrier lookup site's tolerance.
    """

    towns: tuple[str, ...]
    industries: tuple[str, ...]
    simultaneous_towns: int = 2
    simultaneous_industries: int = 2
    simultaneous_lookups: int = 2
    enable_provider_lookup: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "towns", _clean_names(self.towns, field_name="towns"))
        object.__setattr__(
            self, "industries", _clean_names(self.industries, field_name="industries")
        )
        _check_bounds("simultaneous_towns", self.simultaneous_towns, TOWN_CONCURRENCY_BOUNDS)
        _check_bounds(
            "simultaneous_industries", self.simultaneous_industries, INDUSTRY_CONCURRENCY_BOUNDS
        )
        _check_bounds("simultaneous_lookups", self.simultaneous_lookups, LOOKUP_CONCURRENCY_BOUNDS)

    def to_payload(self) -> dict[str, Any]:
        return {
            "towns": list(self.towns),
            "industries": list(self.industries),
            "simultaneous_towns": self.simultaneous_towns,
            "simultaneous_industries": self.simultaneous_industries,
            "simultaneous_lookups": self.simultaneous_lookups,
            "enable_provider_lookup": self.enable_provider_lookup,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ScrapeConfig":
        return cls(
            towns=tuple(payload.get("towns") or ()),
            industries=tuple(payload.get("industries") or ()),
            simultaneous_towns=payload.get("simultaneous_towns", 2),
            simultaneous_industries=payload.get("simultaneous_industries", 2),
            simultaneous_lookups=payload.get("simultaneous_lookups", 2),
            enable_provider_lookup=bool(payload.get("enable_provider_lookup", True)),
        )


@dataclass(frozen=True)
class BusinessRecord:
    """
    One business listing extracted for a (town, industry) pair.
    """

    name: str
    town: str
    industry: str
    phone: str | None = None
    address: str = ""
    maps_url: str = ""
    carrier: str = CARRIER_UNRESOLVED

    def __post_init__(self) -> None:
        if not self.town.strip() or not self.industry.strip():
            raise ValueError("BusinessRecord requires a non-blank town and industry.")

    def with_carrier(self, carrier: str) -> "BusinessRecord":
        return replace(self, carrier=carrier)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "BusinessRecord":
        return cls(
            name=str(payload.get("name", "")),
            town=str(payload["town"]),
            industry=str(payload["industry"]),
            phone=payload.get("phone"),
            address=str(payload.get("address") or ""),
            maps_url=str(payload.get("maps_url") or ""),
            carrier=str(payload.get("carrier") or CARRIER_UNRESOLVED),
        )


@dataclass(frozen=True)
class BusinessMatch:
    """
    A map listing found by business name, before it is tied to a town and
    industry.
    """

    name: str
    phone: str | None = None
    address: str = ""
    maps_url: str = ""

    def to_record(self, *, town: str, industry: str) -> BusinessRecord:
        return BusinessRecord(
            name=self.name,
            town=town,
            industry=industry,
            phone=self.phone,
            address=self.address,
            maps_url=self.maps_url,
        )


@dataclass(frozen=True)
class IndustryFailure:
    town: str
    industry: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class TownResult:
    """
    Outcome of one BrowserWorker.process_town call.
    """

    town: str
    businesses: list[BusinessRecord]
    industry_failures: list[IndustryFailure]
    duration_seconds: float

    @property
    def industries_succeeded(self) -> int:
        return len({record.industry for record in self.businesses})


@dataclass(frozen=True)
class CarrierResult:
    carrier: str
    confidence: float
    from_cache: bool = False
    error: str | None = None

    @property
    def resolved(self) -> bool:
        return self.carrier != CARRIER_UNKNOWN


@dataclass(frozen=True)
class BusinessCarrierResult:
    query: str
    match: BusinessMatch
    carrier: CarrierResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "name": self.match.name,
            "phone": self.match.phone,
            "address": self.match.address,
            "maps_url": self.match.maps_url,
            "carrier": self.carrier.carrier,
            "confidence": self.carrier.confidence,
            "error": self.carrier.error,
        }


def with_carriers(
    records: Iterable[BusinessRecord],
    carriers: Mapping[str, CarrierResult],
) -> list[BusinessRecord]:
    """
    Attach looked-up carriers by phone. Records without a phone become
    unknown; phones missing from ``carriers`` keep their current label.
    """

    updated: list[BusinessRecord] = []
    for record in records:
        result = carriers.get(record.phone) if record.phone else None
        if result is None:
            updated.append(record.with_carrier(CARRIER_UNKNOWN) if not record.phone else record)
        else:
            updated.append(record.with_carrier(result.carrier))
    return updated


class SessionStatus:
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[str] = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.STOPPED, SessionStatus.FAILED}
)

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.FAILED}
    ),
    SessionStatus.RUNNING: frozenset(
        {
            SessionStatus.PAUSED,
            SessionStatus.COMPLETED,
            SessionStatus.STOPPED,
            SessionStatus.FAILED,
        }
    ),
    SessionStatus.PAUSED: frozenset(
        {SessionStatus.RUNNING, SessionStatus.STOPPED, SessionStatus.FAILED}
    ),
}


def check_transition(current: str, target: str) -> None:
    if target not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidSessionTransitionError(current, target)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionState:
    """
    Mutable session bookkeeping. Only the orchestrator writes to it, and
    nothing may change once a terminal status is reached.
    """

    session_id: str
    status: str = SessionStatus.PENDING
    total_towns: int = 0
    completed_towns: list[str] = field(default_factory=list)
    failed_towns: dict[str, str] = field(default_factory=dict)
    businesses: list[BusinessRecord] = field(default_factory=list)
    industry_failures: list[IndustryFailure] = field(default_factory=list)
    lookup_failures: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_checkpoint_at: datetime | None = None
    error_message: str | None = None
    error_detail: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def processed_towns(self) -> int:
        return len(self.completed_towns) + len(self.failed_towns)

    @property
    def progress_percent(self) -> int:
        if self.total_towns <= 0:
            return 0
        processed = min(self.processed_towns, self.total_towns)
        return max(0, min(100, round(processed / self.total_towns * 100)))

    def transition(self, target: str) -> None:
        check_transition(self.status, target)
        self.status = target
        if target == SessionStatus.RUNNING and self.started_at is None:
            self.started_at = _utcnow()
        if target in TERMINAL_STATUSES:
            self.finished_at = _utcnow()

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise InvalidSessionTransitionError(self.status, "update")

    def record_town_success(self, result: TownResult) -> None:
        self._ensure_mutable()
        if result.town in self.completed_towns:
            return
        self.failed_towns.pop(result.town, None)
        self.completed_towns.append(result.town)
        self.businesses.extend(result.businesses)
        self.industry_failures.extend(result.industry_failures)

    def record_town_failure(self, town: str, reason: str) -> None:
        self._ensure_mutable()
        if town not in self.completed_towns:
            self.failed_towns[town] = reason

    def apply_carriers(self, carriers: Mapping[str, CarrierResult]) -> None:
        self._ensure_mutable()
        self.businesses = with_carriers(self.businesses, carriers)
        self.lookup_failures = sum(1 for result in carriers.values() if result.error)

    def mark_checkpointed(self) -> None:
        self.last_checkpoint_at = _utcnow()

    def snapshot(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "progress": self.progress_percent,
            "total_towns": self.total_towns,
            "completed_towns": len(self.completed_towns),
            "failed_towns": dict(self.failed_towns),
            "businesses": len(self.businesses),
            "industry_failures": len(self.industry_failures),
            "lookup_failures": self.lookup_failures,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "last_checkpoint_at": (
                self.last_checkpoint_at.isoformat() if self.last_checkpoint_at else None
            ),
            "error_message": self.error_message,
            "error_detail": self.error_detail,
        }


@dataclass(frozen=True)
class ScrapeSummary:
    status: str
    towns_total: int
    towns_completed: int
    towns_failed: int
    businesses_total: int
    duration_seconds: float
    industry_failures: int = 0
    lookup_failures: int = 0
    failed_towns: dict[str, str] = field(default_factory=dict)

    @property
    def businesses_per_town(self) -> float:
        if self.towns_completed <= 0:
            return 0.0
        return round(self.businesses_total / self.towns_completed, 2)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["businesses_per_town"] = self.businesses_per_town
        return payload

    @classmethod
    def from_state(cls, state: SessionState, *, duration_seconds: float) -> "ScrapeSummary":
        return cls(
            status=state.status,
            towns_total=state.total_towns,
            towns_completed=len(state.completed_towns),
            towns_failed=len(state.failed_towns),
            businesses_total=len(state.businesses),
            duration_seconds=round(duration_seconds, 3),
            industry_failures=len(state.industry_failures),
            lookup_failures=state.lookup_failures,
            failed_towns=dict(state.failed_towns),
        )
