"""
app/api/routers package marker.
"""

from app.api.routers.scraper_sessions import router as scraper_sessions_router

__all__ = [
    "scraper_sessions_router",
]
