from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.services.cache import SQLiteCache, TTLCache


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_ttl_cache_expires_entries() -> None:
    clock = FakeClock()
    cache = TTLCache(ttl=timedelta(hours=1), clock=clock)
    cache.set("tehran", {"lat": 35.7})

    clock.now += timedelta(minutes=59)
    entry = cache.get("tehran")
    assert entry is not None and entry.value == {"lat": 35.7}

    clock.now += timedelta(minutes=2)
    assert cache.get("tehran") is None
    assert len(cache) == 0


def test_ttl_cache_uses_shorter_ttl_for_misses() -> None:
    clock = FakeClock()
    cache = TTLCache(ttl=timedelta(days=30), negative_ttl=timedelta(hours=1), clock=clock)
    cache.set("hit", {"lat": 1.0})
    cache.set("miss", None)

    clock.now += timedelta(hours=2)

    assert cache.get("hit") is not None
    assert cache.get("miss") is None


def test_ttl_cache_evicts_least_recently_used() -> None:
    cache = TTLCache(ttl=timedelta(hours=1), max_entries=2)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") is not None
    assert cache.get("c") is not None


def test_ttl_cache_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        TTLCache(ttl=timedelta(hours=1), max_entries=0)


def test_sqlite_cache_persists_across_instances(tmp_path: Path) -> None:
    db_path = tmp_path / "geocache.sqlite"
    clock = FakeClock()
    first = SQLiteCache(db_path, ttl=timedelta(days=1), negative_ttl=timedelta(hours=1), clock=clock)
    first.set("qom", {"lat": 34.64, "lon": 50.87})
    first.set("nowhere", None)
    first.close()

    second = SQLiteCache(db_path, ttl=timedelta(days=1), negative_ttl=timedelta(hours=1), clock=clock)
    hit = second.get("qom")
    miss = second.get("nowhere")

    assert hit is not None and hit.value == {"lat": 34.64, "lon": 50.87}
    assert miss is not None and miss.value is None
    assert second.get("unknown") is None
    second.close()


def test_sqlite_cache_expiry_and_purge(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = SQLiteCache(tmp_path / "cache.sqlite", ttl=timedelta(days=1), negative_ttl=timedelta(hours=1), clock=clock)
    cache.set("qom", {"lat": 34.64})
    cache.set("nowhere", None)

    clock.now += timedelta(hours=2)

    assert cache.get("qom") is not None
    assert cache.get("nowhere") is None
    assert cache.purge_expired() == 1

    clock.now += timedelta(days=1)

    assert cache.get("qom") is None
    assert cache.purge_expired() == 1
    cache.close()


def test_sqlite_cache_rejects_bad_table_name(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        SQLiteCache(tmp_path / "cache.sqlite", ttl=timedelta(days=1), table="drop table;")
