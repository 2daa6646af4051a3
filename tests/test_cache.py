import pytest

from presence.core.cache import (
    CacheBackend,
    MemoryCacheBackend,
    ResponseCache,
    SqlCacheBackend,
    create_cache,
    generate_key,
    generate_search_key,
)
from presence.core.config import build_settings
from presence.core.db import Database
from presence.core.errors import CacheBackendError
from presence.sheets.models import SearchCriteria
from tests.fakes import FakeClock


@pytest.fixture(params=["memory", "sql"])
def backend(request):
    if request.param == "memory":
        yield MemoryCacheBackend()
    else:
        database = Database(path=":memory:")
        yield SqlCacheBackend(database)
        database.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(backend, clock):
    return ResponseCache(backend, ttl_ms=300000, clock=clock)


class BrokenBackend(CacheBackend):
    name = "broken"

    def _fail(self, *args, **kwargs):
        raise CacheBackendError("backend down")

    get = set = delete = keys = clear = clear_pattern = cleanup = stats = _fail


# --- keys ---


def test_key_without_criteria():
    assert generate_key("2025", 1, 15) == "data|year:2025|page:1|size:15"
    assert generate_key(None, 2, 100) == "data|page:2|size:100"


def test_key_normalizes_search_terms():
    a = generate_key("2025", 1, 15, SearchCriteria(search="  Budi "))
    b = generate_key("2025", 1, 15, SearchCriteria(search="budi"))
    assert a == b == "data|year:2025|page:1|size:15|s:budi"


def test_key_includes_every_criterion_and_escapes():
    criteria = SearchCriteria(
        search="Budi Santoso", teacher="Ani", student="Siti", date_from="01/01/2025", date_to="2025-01-31"
    )
    assert generate_key("2025", 3, 10, criteria) == (
        "data|year:2025|page:3|size:10|s:budi%20santoso|t:ani|st:siti"
        "|from:01%2F01%2F2025|to:2025-01-31"
    )


def test_key_differs_by_page_and_size():
    keys = {generate_key("2025", p, s) for p in (1, 2) for s in (10, 20)}
    assert len(keys) == 4


def test_search_key():
    assert generate_search_key(None, 1, 50, "Budi") == "search|page:1|size:50|s:budi"
    assert generate_search_key(None, 1, 50, None) == "search|page:1|size:50"
    assert generate_search_key(None, 1, 50, "budi") != generate_key(None, 1, 50, SearchCriteria(search="budi"))


# --- facade over both backends ---


def test_round_trip_marks_cached(cache):
    payload = {"success": True, "data": [{"Nama Tentor": "Budi"}], "cached": False}
    cache.set("k", payload)
    hit = cache.get("k")
    assert hit == {"success": True, "data": [{"Nama Tentor": "Budi"}], "cached": True}
    # the caller's payload is untouched
    assert payload["cached"] is False


def test_miss_returns_none(cache):
    assert cache.get("absent") is None


def test_entry_expires_after_ttl(cache, clock):
    cache.set("k", {"v": 1})
    clock.advance(299)
    assert cache.get("k") == {"v": 1, "cached": True}
    clock.advance(2)
    assert cache.get("k") is None
    # lazily evicted on read
    assert cache.backend.keys() == []


def test_set_overwrites(cache):
    cache.set("k", {"v": 1})
    cache.set("k", {"v": 2})
    assert cache.get("k")["v"] == 2


def test_clear_returns_count(cache):
    cache.set("a", {"v": 1})
    cache.set("b", {"v": 2})
    assert cache.clear() == 2
    assert cache.get("a") is None


def test_clear_pattern_removes_matching_keys_only(cache):
    cache.set(generate_key("2024", 1, 15), {"v": 1})
    cache.set(generate_key("2025", 1, 15), {"v": 2})
    cache.set(generate_key("2025", 2, 15, SearchCriteria(search="50%")), {"v": 3})
    assert cache.clear_pattern("year:2025") == 2
    assert cache.backend.keys() == [generate_key("2024", 1, 15)]


def test_clear_pattern_treats_percent_literally(cache):
    cache.set("data|s:50%25", {"v": 1})
    cache.set("data|s:other", {"v": 2})
    assert cache.clear_pattern("%25") == 1
    assert cache.clear_pattern("%") == 0


def test_cleanup_and_stats(cache, clock):
    cache.set("old", {"v": 1})
    clock.advance(200)
    cache.set("new", {"v": 2})
    clock.advance(150)

    stats = cache.get_stats()
    assert stats["total_entries"] == 2
    assert stats["active_entries"] == 1
    assert stats["expired_entries"] == 1
    assert stats["approx_bytes"] > 0
    assert stats["ttl_ms"] == 300000
    assert stats["backend"] == cache.backend.name

    assert cache.cleanup() == 1
    assert cache.get_stats()["total_entries"] == 1


def test_delete(cache):
    cache.set("k", {"v": 1})
    assert cache.delete("k") is True
    assert cache.delete("k") is False


# --- failure absorption ---


def test_backend_failures_are_absorbed():
    cache = ResponseCache(BrokenBackend(), ttl_ms=1000, clock=FakeClock())
    cache.set("k", {"v": 1})
    assert cache.get("k") is None
    assert cache.delete("k") is False
    assert cache.clear() == 0
    assert cache.clear_pattern("k") == 0
    assert cache.cleanup() == 0
    assert cache.get_stats()["error"] == "Could not retrieve stats"


def test_unserializable_payload_is_not_cached():
    cache = ResponseCache(MemoryCacheBackend(), clock=FakeClock())
    cache.set("k", {"v": object()})
    assert cache.get("k") is None


def test_sql_backend_persists_across_instances(tmp_path):
    path = str(tmp_path / "cache.db")
    clock = FakeClock()
    first = ResponseCache(SqlCacheBackend(Database(path=path)), clock=clock)
    first.set("k", {"v": 1})
    first.backend.database.dispose()

    second = ResponseCache(SqlCacheBackend(Database(path=path)), clock=clock)
    assert second.get("k") == {"v": 1, "cached": True}
    second.backend.database.dispose()


def test_create_cache_picks_backend(tmp_path):
    base = {"sheets": {"sheet_id": "id", "api_key": "key"}}
    memory = create_cache(build_settings(base))
    assert isinstance(memory.backend, MemoryCacheBackend)

    sql = create_cache(build_settings({
        **base,
        "cache": {"backend": "sql", "ttl_ms": 1000},
        "database": {"path": str(tmp_path / "c.db")},
    }))
    assert isinstance(sql.backend, SqlCacheBackend)
    assert sql.ttl_ms == 1000
    sql.backend.database.dispose()
