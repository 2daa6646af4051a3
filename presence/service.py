"""
Request orchestration: cache lookup -> remote fetch -> year filter -> search -> paginate -> cache store.
One PresenceService is built per process and handed to the API layer.
"""
import asyncio
import logging
import time
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from presence.core.cache import ResponseCache
from presence.core.config import ApiSettings
from presence.core.errors import InvalidQueryError, RequestTimeoutError
from presence.sheets.fetcher import RecordFetcher
from presence.sheets.models import FetchResult, SearchCriteria
from presence.sheets.processor import (
    apply_search,
    filter_by_year,
    paginate,
    search_records,
    unique_student_names,
    unique_teacher_names,
)

API_VERSION = "1.0.0"
WARMUP_PAGE_SIZE = 200


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PresenceService:
    def __init__(
        self,
        fetcher: RecordFetcher,
        cache: ResponseCache,
        api_settings: Optional[ApiSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
    ):
        self.fetcher = fetcher
        self.cache = cache
        self.api_settings = api_settings or ApiSettings()
        self.clock = clock
        self.today = today
        self.started_at = clock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def normalize_paging(self, page: Optional[int], page_size: Optional[int]) -> Tuple[int, int]:
        page = max(1, int(page or 1))
        page_size = int(page_size or self.api_settings.default_page_size)
        page_size = min(self.api_settings.max_page_size, max(1, page_size))
        return page, page_size

    async def _fetch(
        self,
        timeout: float,
        year: Optional[str] = None,
        page: int = 1,
        page_size: int = 100,
        fetch_all: bool = False,
    ) -> FetchResult:
        """Run the blocking fetch in a worker thread; no retry starts after the deadline."""
        # Same clock the retry policy checks deadlines against
        deadline = time.monotonic() + timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.fetcher.fetch,
                    year=year,
                    page=page,
                    page_size=page_size,
                    fetch_all=fetch_all,
                    deadline=deadline,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise RequestTimeoutError(f"Request timeout after {timeout:.0f}s while fetching data") from e

    async def get_data(
        self,
        year: Optional[str] = None,
        page: Optional[int] = 1,
        page_size: Optional[int] = None,
        criteria: Optional[SearchCriteria] = None,
    ) -> Dict[str, Any]:
        year = (year or "").strip() or None
        page, page_size = self.normalize_paging(page, page_size)
        criteria = criteria or SearchCriteria()

        cache_key = self.cache.generate_key(year, page, page_size, criteria)
        cached = self.cache.get(cache_key)
        if cached is not None:
            self.logger.info(f"Full response cache hit for key: {cache_key}")
            return cached

        # Without an explicit year, a date filter picks which year sheet to read
        fetch_year = year or criteria.effective_year()
        self.logger.info(f"Cache miss for key: {cache_key}. Fetching data from {fetch_year or 'default range'}")
        result = await self._fetch(
            self.api_settings.request_timeout_seconds, year=fetch_year, page=page, page_size=page_size
        )

        filtered = filter_by_year(result.records, year)
        search_started = time.monotonic()
        filtered = apply_search(filtered, criteria)
        search_ms = int((time.monotonic() - search_started) * 1000)
        page_result = paginate(filtered, page, page_size)

        filters: Dict[str, Any] = {"year": year or "all"}
        if not criteria.is_empty():
            filters["search"] = criteria.to_dict()

        response = {
            "data": [record.to_dict() for record in page_result.items],
            "pagination": page_result.meta.to_dict(),
            "filters": filters,
            "fetchedAt": _now_iso(),
            "fetchTime": f"{result.elapsed_ms}ms",
            "totalRecordsBeforeFilter": len(result.records),
            "totalRecordsAfterFilter": len(filtered),
        }
        self.cache.set(cache_key, response)

        self.logger.info(
            f"Data request completed: year={year or 'all'} (fetched from {fetch_year or 'all'}), "
            f"search={criteria.to_dict() or 'none'}, page={page_result.meta.current_page}, "
            f"pageSize={page_size}, results={len(page_result.items)}, "
            f"fetchTime={result.elapsed_ms}ms, searchTime={search_ms}ms"
        )
        return {**response, "cached": False}

    async def search(self, term: Optional[str], page: Optional[int] = 1, page_size: Optional[int] = None) -> Dict[str, Any]:
        term = (term or "").strip()
        if not term:
            raise InvalidQueryError(
                "Search term is required. Use ?q=your_search_term or ?search=your_search_term"
            )
        page, page_size = self.normalize_paging(page, page_size)

        cache_key = self.cache.generate_search_key(None, page, page_size, term)
        cached = self.cache.get(cache_key)
        if cached is not None:
            self.logger.info(f"Search response cache hit for key: {cache_key}")
            return cached

        # Matches are sparse, so read as many rows as the largest page would need
        result = await self._fetch(
            self.api_settings.request_timeout_seconds,
            page=page,
            page_size=self.api_settings.max_page_size,
        )
        search_started = time.monotonic()
        matches = search_records(result.records, term)
        search_ms = int((time.monotonic() - search_started) * 1000)
        page_result = paginate(matches, page, page_size)

        response = {
            "data": [record.to_dict() for record in page_result.items],
            "pagination": page_result.meta.to_dict(),
            "search": {
                "term": term,
                "totalMatches": len(matches),
                "searchTime": f"{search_ms}ms",
            },
            "fetchedAt": _now_iso(),
            "fetchTime": f"{result.elapsed_ms}ms",
        }
        self.cache.set(cache_key, response)
        self.logger.info(
            f"Search completed: term={term!r}, matches={len(matches)}, page={page_result.meta.current_page}, "
            f"results={len(page_result.items)}, searchTime={search_ms}ms"
        )
        return {**response, "cached": False}

    def refresh(self, pattern: Optional[str] = None) -> Dict[str, Any]:
        """Drop cached responses; the next request for each key fetches again."""
        pattern = (pattern or "").strip() or None
        self.logger.info(f"Manual refresh requested (pattern={pattern or 'all'})")
        cleared = self.cache.clear_pattern(pattern) if pattern else self.cache.clear()
        return {
            "message": "Cache cleared successfully. Data will be refreshed on the next request.",
            "cleared": cleared,
            "pattern": pattern,
            "refreshedAt": _now_iso(),
        }

    def clear_cache(self) -> Dict[str, Any]:
        cleared = self.cache.clear()
        return {
            "message": "Cache cleared successfully",
            "cleared": cleared,
            "timestamp": _now_iso(),
        }

    def status(self) -> Dict[str, Any]:
        return {
            "api": {
                "status": "operational",
                "version": API_VERSION,
                "uptime": round(self.clock() - self.started_at, 3),
                "timestamp": _now_iso(),
            },
            "googleSheets": self.fetcher.status(),
            "cache": self.cache.get_stats(),
        }

    async def tutors(self) -> Dict[str, Any]:
        """Unique teacher names in the current year's sheet."""
        year = str(self.today().year)
        cache_key = f"unique_tutor_names_{year}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        self.logger.info(f"Cache miss for unique tutor names for {year}. Fetching all data for {year}")
        result = await self._fetch(self.api_settings.refresh_timeout_seconds, year=year, fetch_all=True)
        payload = {"names": unique_teacher_names(result.records)}
        self.cache.set(cache_key, payload)
        return {**payload, "cached": False}

    async def students(self) -> Dict[str, Any]:
        """Unique student names across the default range."""
        cache_key = "unique_student_names"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        self.logger.info("Cache miss for unique student names. Fetching all data")
        result = await self._fetch(self.api_settings.refresh_timeout_seconds, fetch_all=True)
        payload = {"names": unique_student_names(result.records)}
        self.cache.set(cache_key, payload)
        return {**payload, "cached": False}

    async def warmup(self, year: Optional[str] = None) -> bool:
        """Populate page 1 for a year. Failures are logged, never raised."""
        year = year or str(self.today().year)
        try:
            self.logger.info(f"Warming up cache for year: {year}")
            await self.get_data(year=year, page=1, page_size=WARMUP_PAGE_SIZE)
            self.logger.info(f"Cache warmed up for year: {year}")
            return True
        except Exception as e:
            self.logger.error(f"Error warming up cache for year {year}: {e}")
            return False
