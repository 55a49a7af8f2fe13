from pymongo.errors import ServerSelectionTimeoutError

import cache


class UnreachableCollection:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise ServerSelectionTimeoutError("no servers")
        return fail


class UnreachableDatabase:
    def __getitem__(self, name):
        return UnreachableCollection()


def test_set_get_delete(db):
    assert cache.cache_set("popular:bags", ["tote", "clutch"], ttl=60) is True
    assert cache.cache_get("popular:bags") == ["tote", "clutch"]

    assert cache.cache_delete("popular:bags") is True
    assert cache.cache_get("popular:bags") is None


def test_expired_entries_are_misses(db):
    cache.cache_set("stale", "value", ttl=-1)

    assert cache.cache_get("stale") is None


def test_unavailable_store_degrades_to_miss(monkeypatch):
    monkeypatch.setattr(cache, "db", UnreachableDatabase())

    assert cache.cache_get("anything") is None
    assert cache.cache_set("anything", 1) is None
    assert cache.cache_delete("anything") is None
