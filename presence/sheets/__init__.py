from .client import SheetsClient
from .fetcher import RecordFetcher
from .models import FetchResult, PaginationMeta, Record, SearchCriteria

__all__ = ["SheetsClient", "RecordFetcher", "FetchResult", "PaginationMeta", "Record", "SearchCriteria"]
