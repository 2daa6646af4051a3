"""
DB model for cached API responses (SQL cache backend).
"""
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String

from presence.core.db import Base


def utc_now() -> datetime:
    """UTC now as naive datetime for DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CacheEntryRecord(Base):
    """One cached response payload; key is the request fingerprint."""
    __tablename__ = "cache_entries"

    key = Column(String(1024), primary_key=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=False), default=utc_now, nullable=False)
    expires_at = Column(DateTime(timezone=False), nullable=False, index=True)
