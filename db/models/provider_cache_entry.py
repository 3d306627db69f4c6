"""
db/models/provider_cache_entry.py

Phone number → carrier lookups shared across sessions.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, utcnow


class ProviderCacheEntry(Base):
    __tablename__ = "provider_lookup_cache"

    phone_number: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        comment="Normalized local-format number, e.g. 0111234567",
    )
    carrier: Mapped[str] = mapped_column(String(64), nullable=False)
    last_checked: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        Index("ix_provider_lookup_cache_last_checked", "last_checked"),
    )
