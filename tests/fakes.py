"""In-memory stand-ins for the spreadsheet API and the clock."""
import re
from typing import Dict, List, Optional

HEADERS = ["Timestamp", "Nama Tentor", "Nama Siswa", "Hari dan Tanggal Les", "Jam Kegiatan Les"]

_RANGE = re.compile(r"^(?P<sheet>[^!]+)!(?P<c1>[A-Z]+)(?P<r1>\d+):(?P<c2>[A-Z]+)(?P<r2>\d+)$")


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Optional[dict] = None, reason: str = ""):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.reason = reason

    def json(self):
        return self._payload


class FakeSheetsSession:
    """
    Stands in for requests.Session against an in-memory document.
    sheets maps sheet title -> full grid (header row first); row_counts overrides grid length.
    failures is a list of status codes (or exceptions) returned before normal responses.
    """

    def __init__(self, sheets: Dict[str, List[List[str]]], row_counts: Optional[Dict[str, int]] = None):
        self.sheets = sheets
        self.row_counts = row_counts or {}
        self.failures: List = []
        self.calls: List[dict] = []

    def _rows(self, sheet: str, first: int, last: int) -> List[List[str]]:
        grid = self.sheets.get(sheet, [])
        rows = [list(r) for r in grid[first - 1:last]]
        while rows and not any(c.strip() for c in rows[-1]):
            rows.pop()
        return rows

    def get(self, url, params=None, timeout=None, headers=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return FakeResponse(failure, {"error": {"message": f"fake {failure}"}})

        if url.endswith("/values:batchGet"):
            ranges = [value for key, value in params if key == "ranges"]
            value_ranges = []
            for a1 in ranges:
                m = _RANGE.match(a1)
                rows = self._rows(m.group("sheet"), int(m.group("r1")), int(m.group("r2")))
                value_ranges.append({"range": a1, "values": rows} if rows else {"range": a1})
            return FakeResponse(200, {"valueRanges": value_ranges})

        if "/values/" in url:
            a1 = url.split("/values/", 1)[1]
            m = _RANGE.match(a1)
            if m is None or m.group("sheet") not in self.sheets:
                return FakeResponse(400, {"error": {"message": "Unable to parse range"}})
            rows = self._rows(m.group("sheet"), int(m.group("r1")), int(m.group("r2")))
            return FakeResponse(200, {"values": rows} if rows else {})

        sheets = [
            {"properties": {
                "title": title,
                "gridProperties": {"rowCount": self.row_counts.get(title, len(grid))},
            }}
            for title, grid in self.sheets.items()
        ]
        return FakeResponse(200, {"sheets": sheets})


def make_row(day: int, month: int, year: int, teacher: str = "Budi", student: str = "Siti",
             hour: int = 10) -> List[str]:
    date = f"{day:02d}/{month:02d}/{year}"
    return [f"{date} {hour:02d}:00:00", teacher, student, date, f"{hour:02d}:00"]

