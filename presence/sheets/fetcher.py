"""
Remote fetcher: pulls only the tail of the sheet a request needs.

Newest rows are appended at the bottom, so batches are planned from the last row
upward until enough rows are covered, then requested in one batchGet call.
Each returned batch is top-down and is reversed before merging; the merged records
are finally sorted newest first.
"""
import logging
import math
import re
import threading
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from presence.core.config import SheetsSettings
from presence.sheets.client import SheetsClient, split_range
from presence.sheets.models import FetchResult, Record, SheetMetadata
from presence.sheets.processor import normalize, sort_by_timestamp

_RANGE_ROWS = re.compile(r"![A-Z]+(\d+):[A-Z]+(\d+)$")


class FetchStage(Enum):
    INIT = "init"
    HEADERS_FETCHED = "headers_fetched"
    ROWCOUNT_FETCHED = "rowcount_fetched"
    BATCHES_PLANNED = "batches_planned"
    BATCHES_FETCHED = "batches_fetched"
    MERGED_AND_SORTED = "merged_and_sorted"
    DONE = "done"
    FAILED = "failed"


def estimate_rows_needed(page: int, page_size: int) -> int:
    """page * page_size plus a buffer of 50% (at least 200 rows) for rows dropped as invalid."""
    records = page * page_size
    buffer = max(records * 0.5, 200)
    return math.ceil(records + buffer)


def column_bounds(columns: str) -> Tuple[str, str]:
    """'A:E' or 'A1:E' -> ('A', 'E')."""
    start, _, end = columns.partition(":")
    start = re.sub(r"\d", "", start) or "A"
    end = re.sub(r"\d", "", end) or start
    return start, end


def plan_batches(
    sheet_name: str,
    columns: str,
    total_rows: int,
    rows_needed: Optional[int],
    batch_size: int = 5000,
) -> List[str]:
    """
    Row ranges from the bottom of the sheet upward, never including the header row.
    rows_needed=None plans the whole sheet.
    """
    start_col, end_col = column_bounds(columns)
    ranges = []
    collected = 0
    top = total_rows
    while top > 1 and (rows_needed is None or collected < rows_needed):
        start = max(2, top - batch_size + 1)
        ranges.append(f"{sheet_name}!{start_col}{start}:{end_col}{top}")
        collected += batch_size
        top -= batch_size
    return ranges


def range_start_row(a1_range: str) -> int:
    match = _RANGE_ROWS.search(a1_range)
    return int(match.group(1)) if match else 2


def merge_batches(headers: List[str], ranges: List[str], grids: List[List[List[str]]]) -> List[Record]:
    """
    Normalize each batch bottom-row-first and concatenate in batch order.
    Rows in a returned grid start at the range's first row; trailing blank rows may be trimmed.
    """
    records: List[Record] = []
    for a1_range, grid in zip(ranges, grids):
        if not grid:
            continue
        start = range_start_row(a1_range)
        row_numbers = [start + i for i in range(len(grid))]
        rows = list(reversed(grid))
        row_numbers.reverse()
        records.extend(normalize([headers] + rows, row_numbers=row_numbers))
    return records


class RecordFetcher:
    """Fetches normalized, newest-first records for a year sheet or the default range."""

    def __init__(
        self,
        client: SheetsClient,
        settings: SheetsSettings,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.settings = settings
        self.clock = clock
        self.last_known_row_count = 0
        self._row_counts: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(self.__class__.__name__)

    def range_for(self, year: Optional[str]) -> str:
        """A year selects the sheet named after it; otherwise the configured default range."""
        if year:
            _, columns = split_range(self.settings.default_range)
            return f"{year}!{columns}"
        return self.settings.default_range

    def fetch(
        self,
        year: Optional[str] = None,
        page: int = 1,
        page_size: int = 100,
        fetch_all: bool = False,
        deadline: Optional[float] = None,
    ) -> FetchResult:
        started = time.monotonic()
        current_range = self.range_for(year)
        sheet_name, columns = split_range(current_range)
        rows_needed = None if fetch_all else estimate_rows_needed(page, page_size)
        self.logger.info(
            f"Fetching data from range: {current_range}, rows to fetch: "
            f"{'all' if rows_needed is None else rows_needed}"
        )

        stage = FetchStage.INIT
        try:
            headers = self._fetch_headers(sheet_name, columns, deadline)
            if not headers:
                self.logger.warning(f"No headers found in sheet {sheet_name}; returning no records")
                return FetchResult([], current_range, [], rows_needed, 0, self._elapsed_ms(started))
            stage = FetchStage.HEADERS_FETCHED

            metadata = SheetMetadata(sheet_name, self._get_total_rows(sheet_name, deadline), headers)
            stage = FetchStage.ROWCOUNT_FETCHED

            ranges = plan_batches(sheet_name, columns, metadata.row_count, rows_needed, self.settings.batch_size)
            stage = FetchStage.BATCHES_PLANNED
            self.logger.debug(f"Planned {len(ranges)} batches for {metadata.row_count} rows: {ranges}")

            grids = self.client.batch_get(ranges, deadline=deadline)
            stage = FetchStage.BATCHES_FETCHED

            records = sort_by_timestamp(merge_batches(metadata.headers, ranges, grids))
            stage = FetchStage.MERGED_AND_SORTED
        except Exception as e:
            self.logger.error(
                f"Fetch from {current_range} {FetchStage.FAILED.value} after stage {stage.value}: {e}"
            )
            raise

        self.logger.debug(f"{current_range}: {stage.value} -> {FetchStage.DONE.value}")
        elapsed = self._elapsed_ms(started)
        self.logger.info(f"Fetched {len(records)} records from {current_range} in {elapsed}ms")
        return FetchResult(records, current_range, ranges, rows_needed, metadata.row_count, elapsed, metadata)

    def _fetch_headers(self, sheet_name: str, columns: str, deadline: Optional[float]) -> Optional[List[str]]:
        start_col, end_col = column_bounds(columns)
        values = self.client.get_values(f"{sheet_name}!{start_col}1:{end_col}1", deadline=deadline)
        return values[0] if values and values[0] else None

    def _get_total_rows(self, sheet_name: str, deadline: Optional[float]) -> int:
        ttl = self.settings.metadata_ttl_seconds
        with self._lock:
            cached = self._row_counts.get(sheet_name)
        if ttl > 0 and cached and self.clock() - cached[1] < ttl:
            return cached[0]

        counts = self.client.get_row_counts(deadline=deadline)
        with self._lock:
            if sheet_name in counts:
                self.last_known_row_count = counts[sheet_name]
                self._row_counts[sheet_name] = (counts[sheet_name], self.clock())
                return counts[sheet_name]
            fallback = self.last_known_row_count or self.settings.fallback_row_count
        self.logger.warning(f"Sheet {sheet_name} not in metadata; estimating {fallback} rows")
        return fallback

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def status(self) -> Dict:
        status = self.client.status()
        status.update({
            "batchSize": self.settings.batch_size,
            "lastKnownRowCount": self.last_known_row_count,
        })
        return status
