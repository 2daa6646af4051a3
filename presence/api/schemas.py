"""
Pydantic request bodies and response views for the HTTP API. Field names are camelCase on the wire.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from presence.sheets.models import SearchCriteria


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchBody(CamelModel):
    search: Optional[str] = None
    teacher: Optional[str] = None
    student: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None

    def to_criteria(self) -> SearchCriteria:
        return SearchCriteria(
            search=self.search,
            teacher=self.teacher,
            student=self.student,
            date_from=self.date_from,
            date_to=self.date_to,
        )


class DataQueryBody(CamelModel):
    """Body of POST /api/data/query."""

    year: Optional[str] = None
    page: int = Field(1, ge=1)
    page_size: Optional[int] = Field(None, ge=1)
    search: SearchBody = Field(default_factory=SearchBody)


class PaginationResponse(CamelModel):
    current_page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool


class DataResponse(CamelModel):
    """Response for GET /api/data and POST /api/data/query."""

    cached: bool = False
    data: List[Dict[str, Any]]
    pagination: PaginationResponse
    filters: Dict[str, Any]
    fetched_at: str
    fetch_time: str
    total_records_before_filter: int
    total_records_after_filter: int


class SearchInfo(CamelModel):
    term: str
    total_matches: int
    search_time: str


class SearchResponse(CamelModel):
    """Response for GET /api/search."""

    cached: bool = False
    data: List[Dict[str, Any]]
    pagination: PaginationResponse
    search: SearchInfo
    fetched_at: str
    fetch_time: str


class RefreshResponse(CamelModel):
    message: str
    cleared: int
    pattern: Optional[str] = None
    refreshed_at: str


class CacheClearResponse(CamelModel):
    message: str
    cleared: int
    timestamp: str


class NamesResponse(CamelModel):
    names: List[str]
    cached: bool = False


class ErrorResponse(CamelModel):
    error: bool = True
    message: str
    timestamp: str
    stack: Optional[str] = None
