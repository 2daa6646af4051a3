import pytest
from fastapi.testclient import TestClient

from presence.api.server import create_app, error_status
from presence.core.cache import MemoryCacheBackend, ResponseCache
from presence.core.errors import (
    ConfigurationError,
    InvalidQueryError,
    RequestTimeoutError,
    RetryExhaustedError,
    SheetsClientError,
    SheetsTransientError,
)
from presence.service import PresenceService


@pytest.fixture
def service(fetcher, settings, fake_session, sheet_grid):
    # a year sheet alongside the default one
    fake_session.sheets["2025"] = sheet_grid
    return PresenceService(fetcher, ResponseCache(MemoryCacheBackend()), settings.api)


@pytest.fixture
def api(service, settings):
    with TestClient(create_app(service, settings), raise_server_exceptions=False) as client:
        yield client


@pytest.mark.parametrize("error,status", [
    (InvalidQueryError("blank"), 400),
    (ConfigurationError("missing"), 503),
    (RequestTimeoutError("slow"), 504),
    (RetryExhaustedError("gave up"), 503),
    (SheetsTransientError("503", status=503), 503),
    (SheetsClientError("403", status=403), 502),
    (ValueError("bug"), 500),
])
def test_error_status(error, status):
    assert error_status(error) == status


def test_get_data(api):
    response = api.get("/api/data", params={"page": 1})
    assert response.status_code == 200
    body = response.json()
    assert body["cached"] is False
    assert [r["Nama Tentor"] for r in body["data"]] == ["T6", "T5"]
    assert body["data"][0]["_rowIndex"] == 7
    assert body["pagination"]["totalItems"] == 6
    assert body["pagination"]["hasNextPage"] is True

    again = api.get("/api/data", params={"page": 1})
    assert again.json()["cached"] is True


def test_get_data_with_camel_case_filters(api):
    response = api.get("/api/data", params={
        "pageSize": 10, "dateFrom": "2025-01-02", "dateTo": "03/01/2025", "teacher": "t",
    })
    assert response.status_code == 200
    body = response.json()
    assert [r["Nama Tentor"] for r in body["data"]] == ["T3", "T2"]
    assert body["filters"]["search"] == {"teacher": "t", "dateFrom": "2025-01-02", "dateTo": "03/01/2025"}


def test_post_data_query(api):
    response = api.post("/api/data/query", json={"page": 1, "pageSize": 3, "search": {"student": "S1"}})
    assert response.status_code == 200
    assert [r["Nama Siswa"] for r in response.json()["data"]] == ["S1"]


def test_invalid_parameters_are_400(api):
    response = api.get("/api/data", params={"page": "abc"})
    assert response.status_code == 400
    body = response.json()
    assert body["error"] is True
    assert "page" in body["message"]
    assert "timestamp" in body

    assert api.post("/api/data/query", json={"page": 0}).status_code == 400


def test_search(api):
    response = api.get("/api/search", params={"q": "s4"})
    assert response.status_code == 200
    body = response.json()
    assert body["search"]["totalMatches"] == 1
    assert body["data"][0]["Nama Siswa"] == "S4"

    assert api.get("/api/search", params={"search": "S4"}).json()["cached"] is True


@pytest.mark.parametrize("first,second", [
    (("/api/search", {"q": "s4"}), ("/api/data", {"search": "s4"})),
    (("/api/data", {"search": "s4"}), ("/api/search", {"q": "s4"})),
])
def test_search_and_data_with_same_term_do_not_share_cache(api, first, second):
    assert api.get(first[0], params=first[1]).status_code == 200
    response = api.get(second[0], params=second[1])
    assert response.status_code == 200
    body = response.json()
    assert body["cached"] is False
    if second[0] == "/api/search":
        assert body["search"]["totalMatches"] == 1
    else:
        assert body["totalRecordsAfterFilter"] == 1
        assert body["filters"]["search"] == {"search": "s4"}


def test_blank_search_is_400(api):
    response = api.get("/api/search", params={"q": "  "})
    assert response.status_code == 400
    assert response.json()["message"].startswith("Search term is required")


def test_refresh_and_cache_clear(api):
    api.get("/api/data")
    response = api.get("/api/refresh")
    assert response.status_code == 200
    assert response.json()["cleared"] == 1
    assert "refreshedAt" in response.json()

    api.get("/api/data")
    assert api.get("/api/refresh", params={"pattern": "year:"}).json()["cleared"] == 0
    response = api.post("/api/cache/clear")
    assert response.json()["cleared"] == 1


def test_status_redacts_and_lists_tasks(api):
    body = api.get("/api/status").json()
    assert body["api"]["status"] == "operational"
    assert body["googleSheets"]["apiKey"] == "AIza..."
    assert body["googleSheets"]["sheetId"] == "1AbCdEfGhI..."
    assert "AIzaSyTESTKEY" not in str(body)
    assert body["cache"]["backend"] == "memory"
    assert [t["name"] for t in body["tasks"]] == ["cache_cleanup"]


def test_students(api):
    body = api.get("/api/students").json()
    assert body["names"] == ["S1", "S2", "S3", "S4", "S5", "S6"]


def test_remote_client_error_is_502(api, fake_session):
    fake_session.failures = [403]
    response = api.get("/api/data", params={"year": "2025"})
    assert response.status_code == 502
    assert "Access denied" in response.json()["message"]
    assert "stack" not in response.json()


def test_unknown_route_is_404(api):
    response = api.get("/api/nope")
    assert response.status_code == 404
    assert response.json()["message"] == "Route GET /api/nope not found"


def test_health_and_root(api):
    health = api.get("/health").json()
    assert health["status"] == "healthy"
    assert health["version"] == "1.0.0"
    assert health["uptime"] >= 0

    root = api.get("/").json()
    assert root["endpoints"]["data"] == "/api/data"


def test_cors_allows_configured_origin(api):
    response = api.options("/api/data", headers={
        "Origin": "http://localhost:5173",
        "Access-Control-Request-Method": "GET",
    })
    assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
