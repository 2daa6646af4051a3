"""
Pure transformations over sheet data: grid -> Record normalization, timestamp
parsing and sorting, year filter, free-text and multi-criteria search, pagination.
Nothing here raises on bad data; invalid rows are dropped and bad timestamps sort last.
"""
import logging
import math
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from presence.sheets.models import (
    DATE_FIELD,
    REQUIRED_FIELDS,
    SEARCHABLE_FIELDS,
    STUDENT_FIELD,
    TEACHER_FIELD,
    Page,
    PaginationMeta,
    Record,
    SearchCriteria,
)

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)
RANGE_START = datetime(1900, 1, 1)
RANGE_END = datetime(2100, 12, 31, 23, 59, 59)


def _cell(value) -> str:
    return "" if value is None else str(value)


def is_row_empty(row: Sequence[str], headers: Sequence[str], required_fields: Sequence[str] = REQUIRED_FIELDS) -> bool:
    """True if every required field is blank for this row (a field missing from headers counts as blank)."""
    for name in required_fields:
        if name not in headers:
            continue
        col = list(headers).index(name)
        if col < len(row) and _cell(row[col]).strip():
            return False
    return True


def is_record_valid(record: Record, required_fields: Sequence[str] = REQUIRED_FIELDS) -> bool:
    return all(record.get(name).strip() for name in required_fields)


def normalize(
    grid: Sequence[Sequence[str]],
    required_fields: Sequence[str] = REQUIRED_FIELDS,
    row_numbers: Optional[Sequence[int]] = None,
) -> List[Record]:
    """
    Convert a header row + data rows into Records, keeping input order.
    row_numbers gives the sheet row of each data row; by default data row i is sheet row i + 2.
    """
    if not grid:
        return []

    headers = [_cell(h) for h in grid[0]]
    records = []
    for i, raw_row in enumerate(grid[1:]):
        row = [_cell(c) for c in (raw_row or [])]
        if not any(c.strip() for c in row):
            continue
        if is_row_empty(row, headers, required_fields):
            continue
        values = {header: (row[col] if col < len(row) else "") for col, header in enumerate(headers)}
        row_index = row_numbers[i] if row_numbers is not None and i < len(row_numbers) else i + 2
        record = Record(values=values, row_index=row_index)
        if is_record_valid(record, required_fields):
            records.append(record)
    return records


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse 'DD/MM/YYYY[ HH:mm[:ss]]'. Anything unparseable maps to the Unix epoch."""
    if not value or not value.strip():
        return EPOCH
    parts = value.strip().split()
    date_part = parts[0]
    time_part = parts[1] if len(parts) > 1 else "00:00:00"

    date_bits = date_part.split("/")
    if len(date_bits) != 3 or not all(date_bits):
        return EPOCH
    time_bits = time_part.split(":")
    if len(time_bits) not in (2, 3):
        return EPOCH
    try:
        day, month, year = (int(b) for b in date_bits)
        hour, minute = int(time_bits[0]), int(time_bits[1])
        second = int(time_bits[2]) if len(time_bits) == 3 else 0
        if len(date_bits[2]) != 4:
            return EPOCH
        return datetime(year, month, day, hour, minute, second)
    except ValueError:
        logger.debug(f"Unparseable timestamp: {value!r}")
        return EPOCH


def sort_by_timestamp(records: Iterable[Record]) -> List[Record]:
    """New list, newest first. Stable: equal timestamps keep their input order."""
    return sorted(records, key=lambda r: parse_timestamp(r.timestamp), reverse=True)


def extract_year(date_string: Optional[str]) -> Optional[str]:
    """Year segment of a DD/MM/YYYY date, or None."""
    if not date_string:
        return None
    parts = date_string.strip().split("/")
    if len(parts) == 3 and len(parts[2]) == 4:
        return parts[2]
    return None


def filter_by_year(records: Iterable[Record], year: Optional[str]) -> List[Record]:
    if not year:
        return list(records)
    year = str(year).strip()
    return [r for r in records if extract_year(r.get(DATE_FIELD)) == year]


def _contains(value: str, term: str) -> bool:
    return term in (value or "").lower()


def search_records(records: Iterable[Record], term: Optional[str]) -> List[Record]:
    """Case-insensitive substring match against any searchable field."""
    term = (term or "").lower().strip()
    if not term:
        return list(records)
    return [
        r for r in records
        if any(_contains(r.get(name), term) for name in SEARCHABLE_FIELDS)
    ]


def parse_date_bound(value: str, end_of_day: bool = False) -> datetime:
    """YYYY-MM-DD or DD/MM/YYYY at 00:00:00 (or 23:59:59 when end_of_day)."""
    clock = "23:59:59" if end_of_day else "00:00:00"
    value = value.strip()
    if "/" in value:
        return parse_timestamp(f"{value} {clock}")
    bits = value.split("-")
    if len(bits) != 3:
        return EPOCH
    year, month, day = bits
    return parse_timestamp(f"{day}/{month}/{year} {clock}")


def advanced_search(records: Iterable[Record], criteria: Optional[SearchCriteria]) -> List[Record]:
    """
    AND of: free-text search, name filters, and a timestamp range.
    A teacher term alone matches either the teacher or the student column;
    with both terms each is matched against its own column.
    """
    result = list(records)
    if criteria is None:
        return result

    if criteria.search:
        result = search_records(result, criteria.search)

    if criteria.teacher and not criteria.student:
        term = criteria.teacher.lower()
        result = [
            r for r in result
            if _contains(r.get(TEACHER_FIELD), term) or _contains(r.get(STUDENT_FIELD), term)
        ]
    else:
        if criteria.teacher:
            term = criteria.teacher.lower()
            result = [r for r in result if _contains(r.get(TEACHER_FIELD), term)]
        if criteria.student:
            term = criteria.student.lower()
            result = [r for r in result if _contains(r.get(STUDENT_FIELD), term)]

    if criteria.date_from or criteria.date_to:
        start = parse_date_bound(criteria.date_from) if criteria.date_from else RANGE_START
        end = parse_date_bound(criteria.date_to, end_of_day=True) if criteria.date_to else RANGE_END
        result = [r for r in result if start <= parse_timestamp(r.timestamp) <= end]

    return result


def apply_search(records: Iterable[Record], criteria: Optional[SearchCriteria]) -> List[Record]:
    """Plain search when only a free-text term is set, advanced search otherwise."""
    if criteria is None or criteria.is_empty():
        return list(records)
    if criteria.is_simple():
        return search_records(records, criteria.search)
    return advanced_search(records, criteria)


def paginate(records: Sequence[Record], page: int = 1, page_size: int = 100) -> Page:
    """Slice one page; page is clamped to [1, total_pages]."""
    if page_size <= 0:
        raise ValueError("page_size must be a positive integer")
    total_items = len(records)
    total_pages = max(math.ceil(total_items / page_size), 1)
    current = max(1, min(page, total_pages))
    start = (current - 1) * page_size
    items = list(records[start:start + page_size])
    return Page(
        items=items,
        meta=PaginationMeta(
            current_page=current,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next_page=current < total_pages,
            has_previous_page=current > 1,
        ),
    )


def unique_names(records: Iterable[Record], field_name: str) -> List[str]:
    return sorted({r.get(field_name).strip() for r in records if r.get(field_name).strip()})


def unique_teacher_names(records: Iterable[Record]) -> List[str]:
    return unique_names(records, TEACHER_FIELD)


def unique_student_names(records: Iterable[Record]) -> List[str]:
    return unique_names(records, STUDENT_FIELD)
