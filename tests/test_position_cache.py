"""
Tests for the unconfirmed-position caches.
"""
import json
from datetime import datetime, timedelta, timezone

from pkg.taskboard.position_cache import JsonFilePositionCache, MemoryPositionCache

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def test_put_and_get():
    cache = MemoryPositionCache(clock=FakeClock())
    cache.put("t1", T0, T0 + timedelta(hours=1))
    entry = cache.get("t1")
    assert entry.start == T0
    assert entry.end == T0 + timedelta(hours=1)
    assert entry.saved_at == T0
    assert cache.get("t2") is None


def test_entries_expire_individually():
    clock = FakeClock()
    cache = MemoryPositionCache(ttl=timedelta(hours=24), clock=clock)
    cache.put("old", T0, T0 + timedelta(hours=1))
    clock.advance(hours=20)
    cache.put("new", T0, T0 + timedelta(hours=1))
    clock.advance(hours=5)

    assert cache.get("old") is None
    assert cache.get("new") is not None
    assert len(cache) == 1


def test_discard():
    cache = MemoryPositionCache(clock=FakeClock())
    cache.put("t1", T0, T0 + timedelta(hours=1))
    cache.discard("t1")
    cache.discard("never-there")
    assert cache.get("t1") is None


def test_json_cache_survives_reload(tmp_path):
    path = tmp_path / "positions.json"
    clock = FakeClock()
    cache = JsonFilePositionCache(str(path), clock=clock)
    cache.put("t1", T0, T0 + timedelta(minutes=30))

    reloaded = JsonFilePositionCache(str(path), clock=clock)
    entry = reloaded.get("t1")
    assert entry is not None
    assert entry.end == T0 + timedelta(minutes=30)


def test_json_cache_drops_stale_entries_on_read(tmp_path):
    path = tmp_path / "positions.json"
    clock = FakeClock()
    JsonFilePositionCache(str(path), clock=clock).put("t1", T0, T0 + timedelta(hours=1))

    clock.advance(hours=25)
    reloaded = JsonFilePositionCache(str(path), clock=clock)
    assert reloaded.get("t1") is None
    assert json.loads(path.read_text()) == {}


def test_json_cache_skips_malformed_entries(tmp_path):
    path = tmp_path / "positions.json"
    path.write_text(json.dumps({
        "good": {"start": T0.isoformat(), "end": (T0 + timedelta(hours=1)).isoformat(), "savedAt": T0.isoformat()},
        "bad-date": {"start": "yesterday", "end": T0.isoformat(), "savedAt": T0.isoformat()},
        "missing": {"start": T0.isoformat()},
    }))
    cache = JsonFilePositionCache(str(path), clock=FakeClock())
    assert [task_id for task_id, _ in cache.items()] == ["good"]


def test_json_cache_ignores_unreadable_file(tmp_path):
    path = tmp_path / "positions.json"
    path.write_text("{not json")
    cache = JsonFilePositionCache(str(path), clock=FakeClock())
    assert len(cache) == 0
