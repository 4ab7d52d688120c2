"""
Unit Tests for LocalKeyValueStore

Tests the guarded API, persistence, the entry bound and TTL helpers.
"""

import pytest

from querysync.infrastructure.storage.local_store import LocalKeyValueStore


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "state" / "store.json"


@pytest.mark.unit
class TestInMemoryStore:
    def test_set_and_get(self):
        store = LocalKeyValueStore()
        assert store.set("theme", {"mode": "dark"}) is True
        assert store.get("theme") == {"mode": "dark"}

    def test_missing_key_returns_default(self):
        assert LocalKeyValueStore().get("missing", "light") == "light"

    def test_unserializable_value_rejected(self):
        store = LocalKeyValueStore()
        assert store.set("bad", object()) is False
        assert "bad" not in store

    def test_remove(self):
        store = LocalKeyValueStore()
        store.set("k", 1)
        assert store.remove("k") is True
        assert store.remove("k") is False

    def test_bound_evicts_oldest(self):
        store = LocalKeyValueStore(max_entries=2)
        store.set("a", 1)
        store.set("b", 2)
        store.set("c", 3)
        assert store.keys() == ["b", "c"]

    def test_rewrite_moves_key_to_newest(self):
        store = LocalKeyValueStore(max_entries=2)
        store.set("a", 1)
        store.set("b", 2)
        store.set("a", 10)
        store.set("c", 3)
        assert store.keys() == ["a", "c"]


@pytest.mark.unit
class TestPersistence:
    def test_values_survive_reopen(self, store_path):
        LocalKeyValueStore(path=store_path).set("org:1", {"name": "Acme"})

        reopened = LocalKeyValueStore(path=store_path)
        assert reopened.get("org:1") == {"name": "Acme"}
        assert reopened.stats()["persistent"] is True

    def test_corrupt_file_starts_empty(self, store_path):
        store_path.parent.mkdir(parents=True)
        store_path.write_bytes(b"not json")

        store = LocalKeyValueStore(path=store_path)
        assert len(store) == 0
        assert store.set("k", 1) is True

    def test_non_object_document_starts_empty(self, store_path):
        store_path.parent.mkdir(parents=True)
        store_path.write_bytes(b"[1, 2]")
        assert len(LocalKeyValueStore(path=store_path)) == 0

    def test_corrupt_value_returns_default(self, store_path):
        store_path.parent.mkdir(parents=True)
        store_path.write_bytes(b'{"good": "1", "bad": "{oops"}')

        store = LocalKeyValueStore(path=store_path)
        assert store.get("good") == 1
        assert store.get("bad", "fallback") == "fallback"

    def test_unwritable_location_degrades(self, tmp_path):
        blocker = tmp_path / "file.txt"
        blocker.write_text("x")
        store = LocalKeyValueStore(path=blocker / "store.json")

        assert store.set("k", 1) is False
        assert store.available is False
        assert store.get("k") == 1


@pytest.mark.unit
class TestTTLHelpers:
    def test_fresh_value_returned(self, clock):
        store = LocalKeyValueStore(clock=clock)
        store.set_with_ttl("org:1", {"id": 1}, 300_000)
        clock.advance(1_000)
        assert store.get_fresh("org:1") == {"id": 1}

    def test_expired_value_removed(self, clock):
        store = LocalKeyValueStore(clock=clock)
        store.set_with_ttl("org:1", {"id": 1}, 1_000)
        clock.advance(1_001)

        assert store.get_fresh("org:1", "gone") == "gone"
        assert "org:1" not in store

    def test_plain_value_is_not_fresh(self):
        store = LocalKeyValueStore()
        store.set("k", "plain")
        assert store.get_fresh("k") is None

    def test_push_recent_dedupes_and_limits(self):
        store = LocalKeyValueStore()
        store.push_recent("searches", "a", limit=3)
        store.push_recent("searches", "b", limit=3)
        store.push_recent("searches", "a", limit=3)
        store.push_recent("searches", "c", limit=3)
        assert store.push_recent("searches", "d", limit=3) == ["d", "c", "a"]
