"""
HTTP client for the Google Sheets values API, authenticated with a static API key.
Maps HTTP failures onto SheetsClientError (not retried) and SheetsTransientError (retried).
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from presence.core.config import SheetsSettings
from presence.core.errors import SheetsClientError, SheetsError, SheetsTransientError
from presence.core.retry import RetryPolicy

USER_AGENT = "Presence-API/1.0.0"

Grid = List[List[str]]


def split_range(a1_range: str) -> Tuple[str, str]:
    """'Sheet!A:E' -> ('Sheet', 'A:E'); a range without columns defaults to A:E."""
    sheet_name, _, columns = a1_range.partition("!")
    return sheet_name, columns or "A:E"


def redact(value: Optional[str], keep: int = 10) -> str:
    if not value:
        return "Not configured"
    return f"{value[:keep]}..." if len(value) > keep else value


def _error_message(response: requests.Response) -> str:
    try:
        return response.json().get("error", {}).get("message") or response.reason or ""
    except (ValueError, AttributeError):
        return response.reason or ""


def raise_for_sheets_status(response: requests.Response) -> None:
    status = response.status_code
    if status < 400:
        return
    message = _error_message(response)
    if status == 400:
        raise SheetsClientError(f"Invalid request to Google Sheets API (check the range): {message}", status)
    if status in (401, 403):
        raise SheetsClientError(
            f"Access denied to Google Sheets. Please check API key permissions: {message}", status
        )
    if status == 404:
        raise SheetsClientError(
            f"Google Sheet not found. Please check GOOGLE_SHEET_ID or sheet name: {message}", status
        )
    if status == 429:
        raise SheetsTransientError(f"Rate limit exceeded: {message}", status)
    if status == 408 or status >= 500:
        raise SheetsTransientError(f"Google Sheets API is unavailable (status {status}): {message}", status)
    raise SheetsClientError(f"Google Sheets API error ({status}): {message}", status)


class SheetsClient:
    """One spreadsheet document. Every call is retried per retry_policy."""

    def __init__(
        self,
        settings: SheetsSettings,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=None,
    ):
        self.settings = settings
        self.session = session or requests.Session()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.max_attempts, base_delay=settings.retry_base_delay
        )
        self._sleep = sleep
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def document_url(self) -> str:
        return f"{self.settings.base_url}/{self.settings.sheet_id}"

    def _get(self, url: str, params: Any, timeout: float) -> Dict[str, Any]:
        try:
            response = self.session.get(
                url, params=params, timeout=timeout, headers={"User-Agent": USER_AGENT}
            )
        except requests.exceptions.Timeout as e:
            raise SheetsTransientError(
                "Request timeout while fetching data from Google Sheets. The dataset might be too large."
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise SheetsTransientError("Network error: Could not connect to Google Sheets API") from e
        except requests.exceptions.RequestException as e:
            raise SheetsTransientError(f"Failed to fetch data from Google Sheets: {e}") from e

        raise_for_sheets_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise SheetsError(f"Malformed response from Google Sheets API: {e}", response.status_code) from e

    def _call(self, fn, description: str, deadline: Optional[float]):
        kwargs = {"description": description, "deadline": deadline}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return self.retry_policy.call(fn, **kwargs)

    def get_row_counts(self, deadline: Optional[float] = None) -> Dict[str, int]:
        """Sheet title -> grid row count for every sheet in the document."""
        params = {"key": self.settings.api_key, "fields": "sheets.properties"}
        data = self._call(
            lambda: self._get(self.document_url, params, self.settings.metadata_timeout),
            "sheet metadata request",
            deadline,
        )
        counts = {}
        for sheet in data.get("sheets", []):
            props = sheet.get("properties", {})
            title = props.get("title")
            rows = props.get("gridProperties", {}).get("rowCount")
            if title is not None and rows is not None:
                counts[title] = int(rows)
        return counts

    def get_values(self, a1_range: str, deadline: Optional[float] = None) -> Grid:
        url = f"{self.document_url}/values/{a1_range}"
        params = {"key": self.settings.api_key}
        self.logger.debug(f"Fetching values from: {a1_range}")
        data = self._call(
            lambda: self._get(url, params, self.settings.metadata_timeout),
            f"values request for {a1_range}",
            deadline,
        )
        return data.get("values", [])

    def batch_get(self, ranges: Sequence[str], deadline: Optional[float] = None) -> List[Grid]:
        """All ranges in one values:batchGet call; one grid per range, in request order."""
        if not ranges:
            return []
        url = f"{self.document_url}/values:batchGet"
        params = [("key", self.settings.api_key), ("majorDimension", "ROWS")]
        params.extend(("ranges", r) for r in ranges)
        self.logger.info(f"Fetching {len(ranges)} batches in a single API call (batchGet)")
        data = self._call(
            lambda: self._get(url, params, self.settings.batch_timeout),
            "batchGet request",
            deadline,
        )
        value_ranges = data.get("valueRanges", [])
        grids = [vr.get("values", []) for vr in value_ranges]
        # Pad so callers can zip against the requested ranges
        grids.extend([] for _ in range(len(ranges) - len(grids)))
        return grids

    def status(self) -> Dict[str, Any]:
        return {
            "configured": bool(self.settings.sheet_id and self.settings.api_key),
            "sheetId": redact(self.settings.sheet_id),
            "apiKey": redact(self.settings.api_key, keep=4),
            "range": self.settings.default_range,
            "apiUrl": f"{self.settings.base_url}/{redact(self.settings.sheet_id)}",
        }
