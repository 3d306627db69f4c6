"""
app/services package marker.
"""

from app.services.excel_export_service import ExcelExportService
from app.services.scrape_session_service import (
    ScrapeSessionService,
    get_scrape_session_service,
)

__all__ = [
    "ExcelExportService",
    "ScrapeSessionService",
    "get_scrape_session_service",
]
