"""
Tests for feedvault.store — insert, limits, query/search, cleanup tiers,
optimize, stats, settings, event log.
"""

from datetime import timedelta

import pytest

from feedvault.config import Settings, ValidationError
from feedvault.store import RecordStore, canonical_ts
from feedvault.types import MediaItem, QuotaSnapshot

from conftest import make_record


# ---------------------------------------------------------------------------
# Insert and limits
# ---------------------------------------------------------------------------


class TestInsert:
    def test_insert_and_get(self, store):
        result = store.insert_if_absent(make_record(1))
        assert result.inserted
        got = store.get("rec-1")
        assert got.title == "Record 1"
        assert got.saved_at == canonical_ts(store.now())

    def test_insert_is_idempotent(self, store):
        store.insert_if_absent(make_record(1))
        second = store.insert_if_absent(make_record(1, title="changed"))
        assert second.duplicate
        assert store.count() == 1
        assert store.get("rec-1").title == "Record 1"

    def test_get_returns_copy(self, store):
        store.insert_if_absent(make_record(1))
        got = store.get("rec-1")
        got.title = "mutated"
        assert store.get("rec-1").title == "Record 1"

    def test_caller_record_not_mutated(self, store):
        rec = make_record(1)
        store.insert_if_absent(rec)
        assert rec.saved_at == ""

    def test_get_missing(self, store):
        assert store.get("nope") is None

    def test_max_records_evicts_oldest(self, clock):
        s = RecordStore(":memory:", clock=clock)
        for i in range(1001):
            clock.advance(seconds=1)
            s.insert_if_absent(make_record(i))
        assert s.count() == 1000
        assert s.get("rec-0") is None
        assert s.get("rec-1000") is not None
        s.close()

    def test_count_bound_after_every_insert(self, small_store, clock):
        for i in range(25):
            clock.advance(seconds=1)
            result = small_store.insert_if_absent(make_record(i))
            assert small_store.count() <= 10
            if i >= 10:
                assert result.evicted == 1

    def test_ties_broken_by_insertion_order(self, small_store):
        for i in range(11):
            small_store.insert_if_absent(make_record(i))
        assert small_store.get("rec-0") is None
        assert small_store.get("rec-1") is not None

    def test_auto_cleanup_on_insert(self, store, clock):
        store.insert_if_absent(make_record(1))
        clock.advance(days=31)
        result = store.insert_if_absent(make_record(2))
        assert result.evicted == 1
        assert store.get("rec-1") is None

    def test_preserve_saved_at(self, store):
        rec = make_record(1, saved_at="2026-02-20T08:00:00Z")
        store.insert_if_absent(rec, preserve_saved_at=True)
        assert store.get("rec-1").saved_at == "2026-02-20T08:00:00.000000+00:00"

    def test_preserve_saved_at_unparsable_restamped(self, store):
        store.insert_if_absent(make_record(1, saved_at="garbage"), preserve_saved_at=True)
        assert store.get("rec-1").saved_at == canonical_ts(store.now())


class TestImportMerge:
    def test_counts_and_stamps(self, store):
        store.insert_if_absent(make_record(1))
        recs = [
            make_record(1),
            make_record(2, saved_at="2026-02-25T00:00:00+00:00"),
        ]
        counts = store.import_merge(recs, source="1.0")
        assert (counts.imported, counts.skipped) == (1, 1)
        got = store.get("rec-2")
        assert got.import_source == "1.0"
        assert got.imported_at
        assert got.saved_at.startswith("2026-02-25T00:00:00")

    def test_limits_enforced_once(self, small_store):
        recs = [make_record(i, saved_at=f"2026-02-{i + 1:02d}T00:00:00+00:00") for i in range(15)]
        counts = small_store.import_merge(recs)
        assert counts.imported == 15
        assert counts.evicted == 5
        assert small_store.count() == 10
        assert small_store.get("rec-0") is None
        assert small_store.get("rec-14") is not None


# ---------------------------------------------------------------------------
# Query and search
# ---------------------------------------------------------------------------


@pytest.fixture
def populated(store, clock):
    for i in range(12):
        clock.advance(hours=1)
        media = [MediaItem(url=f"https://media.licdn.com/{i}.jpg")] if i % 3 == 0 else []
        store.insert_if_absent(make_record(i, media=media))
    return store


class TestQuery:
    def test_newest_first_and_paging(self, populated):
        page = populated.query(page=1, limit=5)
        assert [r.id for r in page.items] == ["rec-11", "rec-10", "rec-9", "rec-8", "rec-7"]
        assert page.total_count == 12
        assert page.has_more
        last = populated.query(page=3, limit=5)
        assert len(last.items) == 2
        assert not last.has_more

    def test_author_filter_case_insensitive(self, populated):
        page = populated.query({"author": "author 2"})
        assert {r.id for r in page.items} == {"rec-2", "rec-7"}

    def test_has_media_filter(self, populated):
        page = populated.query({"has_media": True})
        assert {r.id for r in page.items} == {"rec-0", "rec-3", "rec-6", "rec-9"}

    def test_date_range(self, populated, clock):
        start = canonical_ts(clock.now - timedelta(hours=2))
        page = populated.query({"date_from": start})
        assert [r.id for r in page.items] == ["rec-11", "rec-10", "rec-9"]

    def test_invalid_date_raises(self, populated):
        with pytest.raises(ValueError, match="date_from"):
            populated.query({"date_from": "last tuesday"})

    def test_limit_clamped(self, populated):
        assert populated.query(limit=0).limit == 1
        assert populated.query(limit=5000).limit == 1000
        assert populated.query(page=-3).page == 1


class TestSearch:
    def test_title_matches_rank_first(self, store, clock):
        store.insert_if_absent(make_record(1, title="Other", text="kafka streams"))
        clock.advance(minutes=1)
        store.insert_if_absent(make_record(2, title="Kafka tips", text="x"))
        clock.advance(minutes=1)
        store.insert_if_absent(make_record(3, title="More", text="about KAFKA"))
        hits = store.search("kafka")
        assert [r.id for r in hits] == ["rec-2", "rec-3", "rec-1"]

    def test_search_author_name(self, store):
        store.insert_if_absent(make_record(4))
        assert [r.id for r in store.search("author 4")] == ["rec-4"]

    def test_search_with_filters(self, populated):
        hits = populated.search("record", {"has_media": True})
        assert len(hits) == 4

    def test_no_hits(self, populated):
        assert populated.search("zebra") == []


# ---------------------------------------------------------------------------
# Deletion and cleanup tiers
# ---------------------------------------------------------------------------


class TestCleanup:
    def test_delete(self, store):
        store.insert_if_absent(make_record(1))
        assert store.delete("rec-1")
        assert not store.delete("rec-1")

    def test_cleanup_by_age(self, store, clock):
        store.insert_if_absent(make_record(1))
        clock.advance(days=10)
        store.insert_if_absent(make_record(2))
        assert store.cleanup_by_age(5) == 1
        assert store.get("rec-2") is not None

    def test_aggressive_count(self, clock):
        s = RecordStore(":memory:", default_settings=Settings(auto_cleanup=False), clock=clock)
        for i in range(300):
            s.insert_if_absent(make_record(i))
        assert s.cleanup_aggressive(0.3, 50) == 90
        assert s.count() == 210
        assert s.get("rec-89") is None
        assert s.get("rec-90") is not None
        s.close()

    def test_aggressive_uses_batch_minimum(self, small_store):
        for i in range(10):
            small_store.insert_if_absent(make_record(i))
        assert small_store.cleanup_aggressive(0.3, 4) == 4
        assert small_store.cleanup_aggressive(0.3, 50) == 6
        assert small_store.cleanup_aggressive(0.3, 50) == 0

    def test_moderate_tops_up_batch(self, small_store, clock):
        for i in range(8):
            small_store.insert_if_absent(make_record(i))
        clock.advance(days=40)
        small_store.insert_if_absent(make_record(8))
        small_store.insert_if_absent(make_record(9))
        removed = small_store.cleanup_moderate(30, batch_min=9)
        assert removed == 9
        assert [r.id for r in small_store.list_records()] == ["rec-9"]

    def test_moderate_respects_target(self, small_store):
        for i in range(5):
            small_store.insert_if_absent(make_record(i))
        assert small_store.cleanup_moderate(30, batch_min=3, target=5) == 0
        assert small_store.cleanup_moderate(30, batch_min=3, target=4) == 3

    def test_clear_keeps_settings(self, store):
        store.update_settings({"max_records": 42})
        store.insert_if_absent(make_record(1))
        assert store.clear() == 1
        assert store.get_settings().max_records == 42

    def test_reset_drops_settings_and_snapshot(self, store):
        store.update_settings({"max_records": 42})
        store.save_quota_snapshot(QuotaSnapshot(total_bytes=1, status="ok"))
        store.insert_if_absent(make_record(1))
        assert store.reset() == 1
        assert store.read_quota_snapshot() is None
        assert store.get_settings().max_records == 1000


# ---------------------------------------------------------------------------
# Optimize, export, stats
# ---------------------------------------------------------------------------


class TestOptimize:
    def test_truncates_text_and_media(self, store):
        media = [MediaItem(url=f"https://media.licdn.com/{i}.jpg") for i in range(6)]
        store.insert_if_absent(make_record(1, text="z" * 8000, media=media))
        store.insert_if_absent(make_record(2))
        assert store.optimize() == 2
        got = store.get("rec-1")
        assert got.text.endswith("... [truncated for storage]")
        assert len(got.text) == 5000 + len("... [truncated for storage]")
        assert len(got.media) == 3

    def test_second_pass_is_noop(self, store):
        store.insert_if_absent(make_record(1, text="z" * 8000))
        store.optimize()
        assert store.optimize() == 0


class TestStats:
    def test_empty(self, store):
        s = store.stats()
        assert s["total_records"] == 0
        assert s["oldest_record"] is None
        assert s["storage_size"]["bytes"] == 0

    def test_buckets(self, store, clock):
        store.insert_if_absent(make_record(1))
        clock.advance(days=3)
        store.insert_if_absent(make_record(2, media=[MediaItem(url="u")]))
        clock.advance(hours=1)
        store.insert_if_absent(make_record(3))
        s = store.stats()
        assert s["total_records"] == 3
        assert s["records_today"] == 2
        assert s["records_this_week"] == 3
        assert s["records_with_media"] == 1
        assert s["unique_authors"] == 3
        assert s["oldest_record"] < s["newest_record"]
        assert s["storage_size"]["bytes"] > 0

    def test_measure_includes_kv(self, store):
        store.insert_if_absent(make_record(1))
        total, record_bytes, count = store.measure()
        assert count == 1
        assert total > record_bytes > 0

    def test_export_all_oldest_first(self, store, clock):
        for i in range(3):
            clock.advance(seconds=1)
            store.insert_if_absent(make_record(i))
        assert [d["id"] for d in store.export_all()] == ["rec-0", "rec-1", "rec-2"]


# ---------------------------------------------------------------------------
# Settings, snapshot, event log
# ---------------------------------------------------------------------------


class TestSettingsAndEvents:
    def test_defaults_written_on_first_access(self, store):
        assert store.get_settings() == Settings()

    def test_update_settings(self, store):
        updated = store.update_settings({"cleanup_days": 7})
        assert updated.cleanup_days == 7
        assert store.get_settings().cleanup_days == 7

    def test_update_settings_invalid(self, store):
        with pytest.raises(ValidationError):
            store.update_settings({"max_records": -1})
        with pytest.raises(ValidationError):
            store.update_settings({"nonsense": 1})
        assert store.get_settings().max_records == 1000

    def test_quota_snapshot_roundtrip(self, store):
        store.save_quota_snapshot(QuotaSnapshot(total_bytes=10, percent_used=0.5, status="warning"))
        snap = store.read_quota_snapshot()
        assert snap.status == "warning"
        assert snap.percent_used == 0.5

    def test_event_log_ring_buffer(self, clock):
        s = RecordStore(":memory:", event_log_capacity=5, clock=clock)
        for i in range(8):
            s.log_event("tick", {"i": i})
        events = s.read_events()
        assert len(events) == 5
        assert events[0].data == {"i": 7}
        assert events[-1].data == {"i": 3}
        s.close()

    def test_file_backed_store_persists(self, tmp_path, clock):
        path = str(tmp_path / "sub" / "vault.db")
        s = RecordStore(path, clock=clock)
        s.insert_if_absent(make_record(1))
        s.close()
        s2 = RecordStore(path, clock=clock)
        assert s2.get("rec-1") is not None
        s2.close()
