"""
app/schemas package marker.
"""

from app.schemas.scraper import (
    BusinessRecordResponse,
    CarrierLookupResponse,
    ScrapeSessionListItem,
    ScrapeSessionStartRequest,
    ScrapeSessionStartResponse,
    ScrapeSessionStatusResponse,
)

__all__ = [
    "BusinessRecordResponse",
    "CarrierLookupResponse",
    "ScrapeSessionListItem",
    "ScrapeSessionStartRequest",
    "ScrapeSessionStartResponse",
    "ScrapeSessionStatusResponse",
]
