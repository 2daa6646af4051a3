"""
Response cache: request fingerprint -> computed response payload, with a TTL.

ResponseCache is the only thing the service talks to. It owns key generation, the
"cached" annotation and error absorption; a CacheBackend only stores JSON payloads
with expiry instants. Two backends: in-process dict and SQLAlchemy table.
"""
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from presence.core.db import Database
from presence.core.errors import CacheBackendError
from presence.core.models import CacheEntryRecord, utc_now
from presence.sheets.models import SearchCriteria

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 5 * 60 * 1000
CACHED_FLAG = "cached"
KEY_PREFIX = "data"
SEARCH_KEY_PREFIX = "search"


def _normalize_term(value: Optional[str]) -> str:
    return quote((value or "").strip().lower(), safe="")


def generate_key(
    year: Optional[str] = None,
    page: int = 1,
    page_size: int = 100,
    criteria: Optional[SearchCriteria] = None,
    prefix: str = KEY_PREFIX,
) -> str:
    """Deterministic fingerprint; search values are trimmed and lowercased first."""
    parts = [prefix]
    if year:
        parts.append(f"year:{str(year).strip()}")
    parts.append(f"page:{page}")
    parts.append(f"size:{page_size}")

    if criteria is not None:
        for label, value in (
            ("s", criteria.search),
            ("t", criteria.teacher),
            ("st", criteria.student),
            ("from", criteria.date_from),
            ("to", criteria.date_to),
        ):
            normalized = _normalize_term(value)
            if normalized:
                parts.append(f"{label}:{normalized}")

    return "|".join(parts)


def generate_search_key(
    year: Optional[str] = None,
    page: int = 1,
    page_size: int = 100,
    term: Optional[str] = None,
) -> str:
    """Key for /api/search responses, kept apart from data responses with the same term."""
    criteria = SearchCriteria(search=term) if term else None
    return generate_key(year, page, page_size, criteria, prefix=SEARCH_KEY_PREFIX)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: Dict[str, Any]
    expires_at: float


class CacheBackend(ABC):
    """Storage for JSON payloads. Times are epoch seconds. Errors raise CacheBackendError."""

    name = "abstract"

    @abstractmethod
    def get(self, key: str, now: float) -> Optional[CacheEntry]:
        """Return the live entry for key; an expired entry is deleted and None returned."""

    @abstractmethod
    def set(self, key: str, payload: Dict[str, Any], expires_at: float) -> None:
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        pass

    @abstractmethod
    def clear(self) -> int:
        pass

    @abstractmethod
    def clear_pattern(self, pattern: str) -> int:
        pass

    @abstractmethod
    def cleanup(self, now: float) -> int:
        """Delete every expired entry; return how many were removed."""

    @abstractmethod
    def stats(self, now: float) -> Dict[str, int]:
        """total, active, expired entry counts and approximate size in bytes."""


class MemoryCacheBackend(CacheBackend):
    """Process-local dict. Payloads are stored as JSON text so callers never share objects."""

    name = "memory"

    def __init__(self):
        self._entries: Dict[str, tuple] = {}  # key -> (json text, expires_at)
        self._lock = threading.Lock()

    def get(self, key: str, now: float) -> Optional[CacheEntry]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            text, expires_at = item
            if expires_at <= now:
                del self._entries[key]
                return None
        return CacheEntry(key=key, payload=json.loads(text), expires_at=expires_at)

    def set(self, key: str, payload: Dict[str, Any], expires_at: float) -> None:
        try:
            text = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise CacheBackendError(f"Payload for {key} is not JSON serializable: {e}") from e
        with self._lock:
            self._entries[key] = (text, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def clear_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [key for key in self._entries if pattern in key]
            for key in matched:
                del self._entries[key]
        return len(matched)

    def cleanup(self, now: float) -> int:
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self, now: float) -> Dict[str, int]:
        with self._lock:
            items = list(self._entries.items())
        expired = sum(1 for _, (_, expires_at) in items if expires_at <= now)
        size = sum(len(key) + len(text) for key, (text, _) in items)
        return {
            "total": len(items),
            "active": len(items) - expired,
            "expired": expired,
            "approx_bytes": size,
        }


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


class SqlCacheBackend(CacheBackend):
    """SQLAlchemy-backed cache table; survives restarts."""

    name = "sql"

    def __init__(self, database: Database):
        self.database = database

    def get(self, key: str, now: float) -> Optional[CacheEntry]:
        try:
            with self.database.session_scope() as session:
                row = session.get(CacheEntryRecord, key)
                if row is None:
                    return None
                if row.expires_at <= _to_datetime(now):
                    session.delete(row)
                    return None
                expires_at = row.expires_at.replace(tzinfo=timezone.utc).timestamp()
                return CacheEntry(key=key, payload=row.payload, expires_at=expires_at)
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache read failed for {key}: {e}") from e

    def set(self, key: str, payload: Dict[str, Any], expires_at: float) -> None:
        try:
            with self.database.session_scope() as session:
                row = session.get(CacheEntryRecord, key)
                if row is None:
                    session.add(CacheEntryRecord(
                        key=key,
                        payload=payload,
                        created_at=utc_now(),
                        expires_at=_to_datetime(expires_at),
                    ))
                else:
                    row.payload = payload
                    row.created_at = utc_now()
                    row.expires_at = _to_datetime(expires_at)
        except (SQLAlchemyError, TypeError, ValueError) as e:
            raise CacheBackendError(f"Cache write failed for {key}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            with self.database.session_scope() as session:
                result = session.execute(delete(CacheEntryRecord).where(CacheEntryRecord.key == key))
                return result.rowcount > 0
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache delete failed for {key}: {e}") from e

    def keys(self) -> List[str]:
        try:
            with self.database.session_scope() as session:
                return list(session.execute(select(CacheEntryRecord.key)).scalars().all())
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache key listing failed: {e}") from e

    def clear(self) -> int:
        try:
            with self.database.session_scope() as session:
                return session.execute(delete(CacheEntryRecord)).rowcount
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache clear failed: {e}") from e

    def clear_pattern(self, pattern: str) -> int:
        try:
            with self.database.session_scope() as session:
                # instr() avoids LIKE wildcards in keys such as '%20'
                result = session.execute(
                    delete(CacheEntryRecord).where(func.instr(CacheEntryRecord.key, pattern) > 0)
                )
                return result.rowcount
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache pattern clear failed for '{pattern}': {e}") from e

    def cleanup(self, now: float) -> int:
        try:
            with self.database.session_scope() as session:
                result = session.execute(
                    delete(CacheEntryRecord).where(CacheEntryRecord.expires_at <= _to_datetime(now))
                )
                return result.rowcount
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache cleanup failed: {e}") from e

    def stats(self, now: float) -> Dict[str, int]:
        try:
            with self.database.session_scope() as session:
                rows = session.execute(
                    select(CacheEntryRecord.key, CacheEntryRecord.payload, CacheEntryRecord.expires_at)
                ).all()
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache stats failed: {e}") from e
        cutoff = _to_datetime(now)
        expired = sum(1 for row in rows if row.expires_at <= cutoff)
        size = sum(len(row.key) + len(json.dumps(row.payload)) for row in rows)
        return {
            "total": len(rows),
            "active": len(rows) - expired,
            "expired": expired,
            "approx_bytes": size,
        }


class ResponseCache:
    """
    Facade over a CacheBackend. Backend failures are logged and behave as a miss or no-op
    so a broken cache only makes requests slower.
    Concurrent misses on one key may both compute and both set; last writer wins.
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        ttl_ms: int = DEFAULT_TTL_MS,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend or MemoryCacheBackend()
        self.ttl_ms = ttl_ms
        self.clock = clock
        self.logger = logging.getLogger(self.__class__.__name__)
        self.logger.info(
            f"Cache service initialized with {self.backend.name} backend and {self.ttl_ms}ms TTL"
        )

    generate_key = staticmethod(generate_key)
    generate_search_key = staticmethod(generate_search_key)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Stored payload plus cached=True, or None on miss, expiry or backend failure."""
        try:
            entry = self.backend.get(key, self.clock())
        except CacheBackendError as e:
            self.logger.warning(f"Cache unavailable on get({key}): {e}")
            return None
        if entry is None:
            self.logger.debug(f"Cache miss for key: {key}")
            return None
        self.logger.debug(f"Cache hit for key: {key}")
        return {**entry.payload, CACHED_FLAG: True}

    def set(self, key: str, payload: Dict[str, Any]) -> None:
        stored = {k: v for k, v in payload.items() if k != CACHED_FLAG}
        expires_at = self.clock() + self.ttl_ms / 1000.0
        try:
            self.backend.set(key, stored, expires_at)
            self.logger.debug(f"Data cached with key: {key}, expires in: {self.ttl_ms}ms")
        except CacheBackendError as e:
            self.logger.warning(f"Cache unavailable on set({key}): {e}")

    def delete(self, key: str) -> bool:
        try:
            return self.backend.delete(key)
        except CacheBackendError as e:
            self.logger.warning(f"Cache unavailable on delete({key}): {e}")
            return False

    def clear(self) -> int:
        try:
            cleared = self.backend.clear()
        except CacheBackendError as e:
            self.logger.warning(f"Cache unavailable on clear: {e}")
            return 0
        self.logger.info(f"Cache cleared. Removed {cleared} entries.")
        return cleared

    def clear_pattern(self, pattern: str) -> int:
        try:
            cleared = self.backend.clear_pattern(pattern)
        except CacheBackendError as e:
            self.logger.warning(f"Cache unavailable on clear_pattern('{pattern}'): {e}")
            return 0
        self.logger.info(f"Cache pattern clear: '{pattern}'. Removed {cleared} entries.")
        return cleared

    def cleanup(self) -> int:
        try:
            removed = self.backend.cleanup(self.clock())
        except CacheBackendError as e:
            self.logger.warning(f"Cache cleanup skipped: {e}")
            return 0
        if removed:
            self.logger.info(f"Cache cleanup removed {removed} expired entries")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        try:
            stats = self.backend.stats(self.clock())
        except CacheBackendError as e:
            self.logger.warning(f"Cache stats unavailable: {e}")
            return {"backend": self.backend.name, "error": "Could not retrieve stats", "ttl_ms": self.ttl_ms}
        return {
            "backend": self.backend.name,
            "total_entries": stats["total"],
            "active_entries": stats["active"],
            "expired_entries": stats["expired"],
            "approx_bytes": stats["approx_bytes"],
            "ttl_ms": self.ttl_ms,
        }


def create_cache(settings, clock: Callable[[], float] = time.time) -> ResponseCache:
    """Build the ResponseCache named by settings.cache.backend."""
    if settings.cache.backend == "sql":
        backend: CacheBackend = SqlCacheBackend(Database(path=settings.database.path))
    else:
        backend = MemoryCacheBackend()
    return ResponseCache(backend, ttl_ms=settings.cache.ttl_ms, clock=clock)
