"""
Value types for the fetch pipeline: records, search criteria, pagination and fetch results.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

# Column headers of the attendance sheet
TIMESTAMP_FIELD = "Timestamp"
TEACHER_FIELD = "Nama Tentor"
STUDENT_FIELD = "Nama Siswa"
DATE_FIELD = "Hari dan Tanggal Les"  # DD/MM/YYYY
TIME_FIELD = "Jam Kegiatan Les"  # HH:mm
DURATION_FIELD = "Durasi Les"  # optional

REQUIRED_FIELDS = (TEACHER_FIELD, STUDENT_FIELD, DATE_FIELD, TIME_FIELD, TIMESTAMP_FIELD)
SEARCHABLE_FIELDS = (TEACHER_FIELD, STUDENT_FIELD, DATE_FIELD, TIME_FIELD, TIMESTAMP_FIELD, DURATION_FIELD)

ROW_INDEX_KEY = "_rowIndex"


@dataclass(frozen=True)
class Record:
    """One attendance row: header -> cell text, plus the sheet row it came from (row 1 is the header)."""

    values: Mapping[str, str]
    row_index: int

    def get(self, name: str) -> str:
        return self.values.get(name, "") or ""

    @property
    def teacher(self) -> str:
        return self.get(TEACHER_FIELD)

    @property
    def student(self) -> str:
        return self.get(STUDENT_FIELD)

    @property
    def lesson_date(self) -> str:
        return self.get(DATE_FIELD)

    @property
    def lesson_time(self) -> str:
        return self.get(TIME_FIELD)

    @property
    def timestamp(self) -> str:
        return self.get(TIMESTAMP_FIELD)

    @property
    def duration(self) -> Optional[str]:
        return self.values.get(DURATION_FIELD) or None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.values)
        data[ROW_INDEX_KEY] = self.row_index
        return data


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclass(frozen=True)
class SearchCriteria:
    """Optional search terms; blank values are stored as None."""

    search: Optional[str] = None
    teacher: Optional[str] = None
    student: Optional[str] = None
    date_from: Optional[str] = None  # YYYY-MM-DD or DD/MM/YYYY
    date_to: Optional[str] = None

    def __post_init__(self):
        for name in ("search", "teacher", "student", "date_from", "date_to"):
            object.__setattr__(self, name, _clean(getattr(self, name)))

    def active_count(self) -> int:
        return sum(
            1 for value in (self.search, self.teacher, self.student, self.date_from, self.date_to)
            if value
        )

    def is_empty(self) -> bool:
        return self.active_count() == 0

    def is_simple(self) -> bool:
        """Only a free-text term is set."""
        return bool(self.search) and self.active_count() == 1

    def effective_year(self) -> Optional[str]:
        """Year implied by date_from (or date_to), used to pick the sheet when no year is given."""
        value = self.date_from or self.date_to
        if not value:
            return None
        if "-" in value:
            year = value.split("-")[0]
        elif "/" in value:
            parts = value.split("/")
            year = parts[2] if len(parts) == 3 else ""
        else:
            return None
        year = year.strip()
        return year if len(year) == 4 and year.isdigit() else None

    def to_dict(self) -> Dict[str, str]:
        """Non-empty terms keyed by their query-parameter names."""
        pairs = (
            ("search", self.search),
            ("teacher", self.teacher),
            ("student", self.student),
            ("dateFrom", self.date_from),
            ("dateTo", self.date_to),
        )
        return {name: value for name, value in pairs if value}


@dataclass(frozen=True)
class PaginationMeta:
    current_page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentPage": self.current_page,
            "pageSize": self.page_size,
            "totalItems": self.total_items,
            "totalPages": self.total_pages,
            "hasNextPage": self.has_next_page,
            "hasPreviousPage": self.has_previous_page,
        }


@dataclass(frozen=True)
class Page:
    items: List[Record]
    meta: PaginationMeta


@dataclass(frozen=True)
class SheetMetadata:
    """Row count and header layout of one sheet, read once per fetch cycle."""

    sheet_name: str
    row_count: int
    headers: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class FetchResult:
    """Records of one fetch cycle, newest first, plus what was requested to get them."""

    records: List[Record]
    sheet_range: str
    ranges: List[str]
    rows_requested: Optional[int]  # None when the whole sheet was requested
    total_rows: int
    elapsed_ms: int
    metadata: Optional[SheetMetadata] = None  # None when the sheet had no header row
