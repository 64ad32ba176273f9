"""
tests/test_store.py – CacheStore contract, run against both backends.
"""
from __future__ import annotations

import threading

import pytest

from adcache.errors import EntryNotFound, InvalidArgument, StorageUnavailable
from adcache.services.store import InMemoryCacheStore, SQLiteCacheStore

DAY = 24 * 60 * 60

ROWS = [
    {"ad_id": "1", "impressions": "1200", "frequency": "2.4", "date_start": "2025-03-01"},
    {"ad_id": "2", "impressions": "800", "frequency": "3.1", "date_start": "2025-03-01"},
]


class TestUpsertAndGet:
    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_upsert_then_get_returns_written_payload(self, store, clock):
        store.upsert("k1", "act_1", "last_7d", ROWS, DAY)
        entry = store.get("k1")
        assert entry is not None
        assert entry.payload == ROWS
        assert entry.scope == "act_1"
        assert entry.range_descriptor == "last_7d"

    def test_new_entry_bookkeeping(self, store, clock):
        entry = store.upsert("k1", "act_1", "last_7d", ROWS, DAY)
        assert entry.access_count == 1
        assert entry.created_at == entry.updated_at == entry.last_accessed_at == clock.now
        assert entry.expires_at == clock.now + DAY * 1000
        assert entry.size_bytes > 0
        assert len(entry.checksum) == 16

    def test_update_in_place_preserves_created_at(self, store, clock):
        first = store.upsert("k1", "act_1", "last_7d", ROWS, DAY)
        clock.advance(60)
        second = store.upsert("k1", "act_1", "last_7d", ROWS[:1], 10)

        assert second.created_at == first.created_at
        assert second.updated_at == second.last_accessed_at == clock.now
        assert second.access_count == 2
        assert second.expires_at == clock.now + 10_000
        assert second.payload == ROWS[:1]
        assert second.size_bytes < first.size_bytes
        assert second.checksum != first.checksum
        assert len(store.list_entries(include_expired=True)) == 1

    def test_size_counts_utf8_bytes(self, store):
        entry = store.upsert("k1", "act_1", "today", "広告", DAY)
        # '"広告"' → two quotes plus two 3-byte characters
        assert entry.size_bytes == 8

    def test_same_payload_same_checksum(self, store):
        a = store.upsert("a", "act_1", "today", {"x": 1}, DAY)
        b = store.upsert("b", "act_1", "today", {"x": 1}, DAY)
        assert a.checksum == b.checksum

    def test_returned_payload_is_a_copy(self, store):
        store.upsert("k1", "act_1", "today", {"rows": [1]}, DAY)
        store.get("k1").payload["rows"].append(2)
        assert store.get("k1").payload == {"rows": [1]}

    def test_non_serialisable_payload_rejected(self, store):
        with pytest.raises(InvalidArgument):
            store.upsert("k1", "act_1", "today", {"x": object()}, DAY)
        assert store.get("k1") is None

    def test_negative_ttl_rejected(self, store):
        with pytest.raises(InvalidArgument):
            store.upsert("k1", "act_1", "today", [], -1)

    def test_zero_ttl_expires_immediately(self, store, clock):
        entry = store.upsert("k1", "act_1", "today", [], 0)
        assert entry.expires_at == entry.created_at == clock.now


class TestTouch:
    def test_touch_bumps_access_without_touching_payload(self, store, clock):
        written = store.upsert("k1", "act_1", "last_7d", ROWS, DAY)
        clock.advance(5)
        store.touch("k1")
        entry = store.get("k1")
        assert entry.access_count == 2
        assert entry.last_accessed_at == clock.now
        assert entry.updated_at == written.updated_at
        assert entry.payload == ROWS

    def test_touch_missing_is_noop(self, store):
        store.touch("nope")
        assert store.get("nope") is None


class TestMaintenance:
    def test_list_by_scope_hides_expired(self, store, clock):
        store.upsert("a", "act_1", "today", [], 10)
        store.upsert("b", "act_1", "last_7d", [], DAY)
        store.upsert("c", "act_2", "today", [], DAY)
        clock.advance(10)

        live = store.list_by_scope("act_1")
        assert [e.key for e in live] == ["b"]
        assert {e.key for e in store.list_by_scope("act_1", include_expired=True)} == {"a", "b"}

    def test_extend_expiry(self, store, clock):
        store.upsert("k1", "act_1", "today", [], 10)
        clock.advance(20)
        extended = store.extend_expiry("k1", 60)
        assert extended.expires_at == clock.now + 60_000

    def test_extend_expiry_from_future_deadline(self, store, clock):
        entry = store.upsert("k1", "act_1", "today", [], 100)
        extended = store.extend_expiry("k1", 50)
        assert extended.expires_at == entry.expires_at + 50_000

    def test_extend_expiry_unknown_key(self, store):
        with pytest.raises(EntryNotFound):
            store.extend_expiry("nope", 60)

    def test_remove(self, store):
        store.upsert("k1", "act_1", "today", [], DAY)
        assert store.remove("k1") is True
        assert store.remove("k1") is False
        assert store.get("k1") is None

    def test_remove_expired(self, store, clock):
        store.upsert("a", "act_1", "today", [], 10)
        store.upsert("b", "act_2", "today", [], 10)
        store.upsert("c", "act_1", "last_7d", [], DAY)
        clock.advance(10)

        assert store.remove_expired("act_1") == 1
        assert store.get("a") is None
        assert store.get("b") is not None
        assert store.remove_expired() == 1
        assert store.get("c") is not None

    def test_remove_by_scope(self, store):
        store.upsert("a", "act_1", "today", [], DAY)
        store.upsert("b", "act_1", "last_7d", [], DAY)
        store.upsert("c", "act_2", "today", [], DAY)
        assert store.remove_by_scope("act_1") == 2
        assert [e.key for e in store.list_entries()] == ["c"]

    def test_stats(self, store, clock):
        store.upsert("a", "act_1", "today", [1, 2, 3], DAY)
        clock.advance(1)
        store.upsert("b", "act_1", "last_7d", [], DAY)
        store.touch("b")
        store.touch("b")
        store.upsert("c", "act_2", "today", [], DAY)

        stats = store.stats("act_1")
        assert stats.total_entries == 2
        assert stats.total_size_bytes == len("[1,2,3]") + len("[]")
        assert stats.avg_access_count == 2.0
        assert stats.oldest_created_at < stats.newest_created_at
        assert store.stats().total_entries == 3

    def test_stats_empty(self, store):
        stats = store.stats("act_9")
        assert stats.total_entries == 0
        assert stats.oldest_created_at is None


class TestConcurrency:
    def test_concurrent_upserts_leave_one_complete_record(self, store):
        payloads = [[{"writer": i, "blob": "x" * (i * 50)}] for i in range(8)]

        def write(p):
            for _ in range(20):
                store.upsert("shared", "act_1", "today", p, DAY)

        threads = [threading.Thread(target=write, args=(p,)) for p in payloads]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        entry = store.get("shared")
        assert entry.payload in payloads
        fresh = store.upsert("reference", "act_1", "today", entry.payload, DAY)
        assert (entry.size_bytes, entry.checksum) == (fresh.size_bytes, fresh.checksum)
        assert len(store.list_entries()) == 2

    def test_len_while_writers_insert(self, clock):
        mem = InMemoryCacheStore(clock=clock)
        sizes = []

        def write(n):
            for i in range(50):
                mem.upsert(f"k{n}-{i}", "act_1", "today", [i], DAY)

        threads = [threading.Thread(target=write, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        while any(t.is_alive() for t in threads):
            sizes.append(len(mem))
        for t in threads:
            t.join()

        assert sizes == sorted(sizes)
        assert len(mem) == 200


class TestSQLiteFailures:
    def test_closed_database_raises_storage_unavailable(self, clock):
        s = SQLiteCacheStore(":memory:", clock=clock)
        s.close()
        with pytest.raises(StorageUnavailable):
            s.get("k1")
        with pytest.raises(StorageUnavailable):
            s.ping()

    def test_persists_across_reopen(self, tmp_path, clock):
        path = tmp_path / "nested" / "cache.db"
        s = SQLiteCacheStore(path, clock=clock)
        s.upsert("k1", "act_1", "today", {"a": 1}, DAY)
        s.close()

        reopened = SQLiteCacheStore(path, clock=clock)
        assert reopened.get("k1").payload == {"a": 1}
        reopened.close()
