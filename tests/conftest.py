# tests/conftest.py

import pytest

from presence.core.config import build_settings
from presence.core.retry import RetryPolicy
from presence.sheets.client import SheetsClient
from presence.sheets.fetcher import RecordFetcher
from tests.fakes import HEADERS, FakeSheetsSession, make_row


@pytest.fixture
def settings():
    return build_settings({
        "sheets": {
            "sheet_id": "1AbCdEfGhIjKlMnOpQrStUvWxYz",
            "api_key": "AIzaSyTESTKEY",
            "default_range": "Presensi!A:E",
            "batch_size": 3,
            "retry_base_delay": 0,
        },
        "api": {"default_page_size": 2, "max_page_size": 50},
    })


@pytest.fixture
def sheet_grid():
    """Header + 6 rows in January 2025, appended in time order, plus one blank row."""
    return [HEADERS] + [make_row(day, 1, 2025, teacher=f"T{day}", student=f"S{day}") for day in range(1, 7)] + [
        ["", "", "", "", ""],
    ]


@pytest.fixture
def fake_session(sheet_grid):
    return FakeSheetsSession({"Presensi": sheet_grid})


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(settings, fake_session, sleeps):
    policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    return SheetsClient(settings.sheets, session=fake_session, retry_policy=policy, sleep=sleeps.append)


@pytest.fixture
def fetcher(client, settings):
    return RecordFetcher(client, settings.sheets)
