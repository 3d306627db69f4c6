"""
app/schemas/scraper.py

Request and response schemas for scrape session and carrier lookup endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.scraper.types import (
    INDUSTRY_CONCURRENCY_BOUNDS,
    LOOKUP_CONCURRENCY_BOUNDS,
    TOWN_CONCURRENCY_BOUNDS,
    BusinessCarrierResult,
    BusinessRecord,
    ScrapeConfig,
)


class ScrapeSessionStartRequest(BaseModel):
    """
    Body of POST /scraper/sessions.
    """

    name: str | None = Field(default=None, max_length=255)
    towns: list[str] = Field(..., min_length=1)
    industries: list[str] = Field(..., min_length=1)
    simultaneous_towns: int = Field(
        default=2,
        ge=TOWN_CONCURRENCY_BOUNDS[0],
        le=TOWN_CONCURRENCY_BOUNDS[1],
    )
    simultaneous_industries: int = Field(
        default=2,
        ge=INDUSTRY_CONCURRENCY_BOUNDS[0],
        le=INDUSTRY_CONCURRENCY_BOUNDS[1],
    )
    simultaneous_lookups: int = Field(
        default=2,
        ge=LOOKUP_CONCURRENCY_BOUNDS[0],
        le=LOOKUP_CONCURRENCY_BOUNDS[1],
    )
    enable_provider_lookup: bool = True

    def to_config(self) -> ScrapeConfig:
        return ScrapeConfig(
            towns=tuple(self.towns),
            industries=tuple(self.industries),
            simultaneous_towns=self.simultaneous_towns,
            simultaneous_industries=self.simultaneous_industries,
            simultaneous_lookups=self.simultaneous_lookups,
            enable_provider_lookup=self.enable_provider_lookup,
        )


class ScrapeSessionStartResponse(BaseModel):
    session_id: str
    status: str


class LogEntryResponse(BaseModel):
    timestamp: datetime
    level: str
    message: str
    town: str | None = None


class ScrapeSessionStatusResponse(BaseModel):
    """
    Live snapshot for running or paused sessions; the persisted snapshot for
    everything else.
    """

    session_id: str
    status: str
    progress: int = Field(..., ge=0, le=100)
    total_towns: int = Field(default=0, ge=0)
    completed_towns: int = Field(default=0, ge=0)
    failed_towns: dict[str, str] = Field(default_factory=dict)
    businesses: int = Field(default=0, ge=0)
    industry_failures: int = Field(default=0, ge=0)
    lookup_failures: int = Field(default=0, ge=0)
    phase: str | None = None
    active_workers: int = Field(default=0, ge=0)
    in_flight: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_checkpoint_at: datetime | None = None
    error_message: str | None = None
    error_detail: str | None = None
    recent_logs: list[LogEntryResponse] = Field(default_factory=list)


class ScrapeSessionListItem(BaseModel):
    session_id: str
    name: str
    status: str
    progress: int = Field(..., ge=0, le=100)
    created_at: datetime | None = None
    summary: dict[str, Any] | None = None
    error_message: str | None = None


class BusinessRecordResponse(BaseModel):
    name: str
    phone: str | None = None
    address: str = ""
    town: str
    industry: str
    maps_url: str = ""
    carrier: str

    @classmethod
    def from_record(cls, record: BusinessRecord) -> "BusinessRecordResponse":
        return cls(**record.to_dict())


class CarrierLookupResponse(BaseModel):
    session_id: str
    numbers_checked: int = Field(..., ge=0)
    records_updated: int = Field(..., ge=0)
    failures: int = Field(..., ge=0)
    carriers: dict[str, str] = Field(default_factory=dict)


class BusinessLookupRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=255)


class BusinessMatchResponse(BaseModel):
    name: str
    phone: str | None = None
    address: str = ""
    maps_url: str = ""
    carrier: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    error: str | None = None

    @classmethod
    def from_result(cls, result: BusinessCarrierResult) -> "BusinessMatchResponse":
        payload = result.to_dict()
        payload.pop("query")
        return cls(**payload)


class BusinessLookupResponse(BaseModel):
    query: str
    results: list[BusinessMatchResponse] = Field(default_factory=list)
