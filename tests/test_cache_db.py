"""
Unit tests for CacheDatabase — row storage, merge semantics, tombstones and
pruning on a real SQLite file.
"""

import pytest

from caldav_calendar_sync.db import CacheDatabase
from caldav_calendar_sync.db import query_status
from caldav_calendar_sync.models import CachedEvent
from caldav_calendar_sync.models import CacheError
from caldav_calendar_sync.models import Event
from caldav_calendar_sync.models import EventStatus
from caldav_calendar_sync.models import EventTransparency
from caldav_calendar_sync.models import GeoPoint
from caldav_calendar_sync.models import SyncStatus
from tests.conftest import START_TIME
from tests.conftest import make_row

DAY = 86400


class TestRowStorage:
    def test_full_event_round_trip(self, cache):
        event = Event(
            id="e1",
            title="Planning",
            date="2026-03-02",
            time="14:00",
            dtend="2026-03-02T15:00:00Z",
            duration="PT1H0M",
            description="",
            location="Room 4",
            attendees=["mailto:a@example.com"],
            categories=[],
            priority=1,
            status=EventStatus.TENTATIVE,
            transparency=EventTransparency.TRANSPARENT,
            rrule="FREQ=WEEKLY",
            geo=GeoPoint(48.1, 11.5),
            timezone="Europe/Berlin",
            sequence=3,
            is_vacation=True,
        )
        cache.upsert_many([CachedEvent(event, "work", "/work/", "e1.ics")], preserve_metadata=False)

        row = cache.get("e1")
        assert row.event == event
        assert row.calendar_name == "work"
        assert row.caldav_filename == "e1.ics"
        assert row.sync_status == SyncStatus.SYNCED
        assert row.synced_at == START_TIME

    def test_absent_and_cleared_fields_are_distinct(self, cache):
        cache.upsert_many([make_row("e1", description="", location=None)], preserve_metadata=False)
        event = cache.get("e1").event
        assert event.description == ""
        assert event.location is None
        assert event.attendees is None

    def test_get_unknown_returns_none(self, cache):
        assert cache.get("missing") is None

    def test_query_range_is_inclusive_and_ordered(self, cache):
        cache.upsert_many(
            [
                make_row("late", date="2026-03-10"),
                make_row("b", date="2026-03-05", time="15:00"),
                make_row("a", date="2026-03-05", time="08:00"),
                make_row("early", date="2026-03-01"),
                make_row("home", calendar="home", date="2026-03-05"),
            ],
            preserve_metadata=False,
        )

        ids = [e.id for e in cache.query("2026-03-01", "2026-03-05")]
        assert ids == ["early", "a", "home", "b"]
        assert [e.id for e in cache.query("2026-03-05", "2026-03-05", "work")] == ["a", "b"]
        assert len(cache.query()) == 5


class TestMergeSemantics:
    def test_preserve_metadata_keeps_synced_at(self, cache, clock):
        cache.upsert_many([make_row("e1", title="v1")], preserve_metadata=True)
        clock.advance(3600)
        cache.upsert_many([make_row("e1", title="v2")], preserve_metadata=True)

        row = cache.get("e1")
        assert row.event.title == "v2"
        assert row.synced_at == START_TIME

    def test_plain_upsert_overwrites_synced_at(self, cache, clock):
        cache.upsert_many([make_row("e1")], preserve_metadata=True)
        clock.advance(3600)
        cache.upsert_many([make_row("e1")], preserve_metadata=False)

        assert cache.get("e1").synced_at == START_TIME + 3600

    def test_merge_upsert_leaves_pending_rows_alone(self, cache):
        cache.upsert_many(
            [make_row("e1", title="Local", sync_status=SyncStatus.PENDING, local_modified=1)],
            preserve_metadata=False,
        )

        written = cache.upsert_many([make_row("e1", title="Remote")], preserve_metadata=True)

        assert written == 0
        row = cache.get("e1")
        assert row.event.title == "Local"
        assert row.sync_status == SyncStatus.PENDING

    def test_merge_upsert_skips_unsynced_tombstones(self, cache):
        cache.upsert_many([make_row("e1")], preserve_metadata=False)
        cache.delete("e1")

        written = cache.upsert_many([make_row("e1"), make_row("e2")], preserve_metadata=True)

        assert written == 1
        assert cache.get_all_ids() == {"e2"}

    def test_merge_upsert_allows_synced_tombstones(self, cache):
        cache.upsert_many([make_row("e1")], preserve_metadata=False)
        cache.delete("e1")
        cache.mark_tombstone_synced("e1")

        assert cache.upsert_many([make_row("e1")], preserve_metadata=True) == 1
        assert cache.get("e1") is not None

    def test_failed_batch_is_rolled_back(self, cache):
        bad = make_row("bad")
        bad.event.title = None  # violates NOT NULL

        with pytest.raises(CacheError):
            cache.upsert_many([make_row("good"), bad], preserve_metadata=False)

        assert cache.get_all_ids() == set()


class TestTombstones:
    def test_delete_writes_unsynced_tombstone(self, cache):
        cache.upsert_many([make_row("e1", caldav_filename="server.ics")], preserve_metadata=False)

        assert cache.delete("e1")

        assert cache.get("e1") is None
        (tombstone,) = cache.list_unsynced_tombstones()
        assert tombstone.id == "e1"
        assert tombstone.calendar_name == "work"
        assert tombstone.caldav_filename == "server.ics"
        assert cache.is_tombstoned("e1", unsynced_only=True)

    def test_delete_unknown_id(self, cache):
        assert not cache.delete("missing")
        assert cache.tombstone_count() == 0

    def test_mark_tombstone_synced(self, cache):
        cache.upsert_many([make_row("e1")], preserve_metadata=False)
        cache.delete("e1")
        cache.mark_tombstone_synced("e1")

        assert cache.unsynced_tombstone_ids() == set()
        assert cache.is_tombstoned("e1")
        assert not cache.is_tombstoned("e1", unsynced_only=True)

    def test_track_remote_deletion_writes_synced_tombstone(self, cache):
        cache.upsert_many([make_row("e1")], preserve_metadata=False)

        cache.track_remote_deletion("e1")

        assert cache.get("e1") is None
        assert cache.get_tombstone("e1").synced_to_remote
        assert cache.tombstone_count(unsynced_only=True) == 0

    def test_track_remote_deletion_keeps_pending_row(self, cache):
        cache.upsert_many(
            [make_row("e1", sync_status=SyncStatus.PENDING, local_modified=1)],
            preserve_metadata=False,
        )

        assert not cache.track_remote_deletion("e1")
        assert cache.get("e1") is not None
        assert cache.get_tombstone("e1") is None

    def test_track_remote_deletion_keeps_local_tombstone(self, cache):
        cache.upsert_many([make_row("e1")], preserve_metadata=False)
        cache.delete("e1")

        assert not cache.track_remote_deletion("e1")
        assert cache.is_tombstoned("e1", unsynced_only=True)


class TestPendingWrites:
    def test_pending_rows_listed_oldest_first(self, cache):
        cache.upsert_many(
            [
                make_row("b", sync_status=SyncStatus.PENDING, local_modified=20),
                make_row("a", sync_status=SyncStatus.PENDING, local_modified=10),
                make_row("c"),
            ],
            preserve_metadata=False,
        )
        assert [r.id for r in cache.list_pending_writes()] == ["a", "b"]
        assert cache.pending_count() == 2

    def test_mark_synced_records_filename(self, cache):
        cache.upsert_many(
            [make_row("e1", sync_status=SyncStatus.PENDING, caldav_filename=None)],
            preserve_metadata=False,
        )
        assert cache.mark_synced("e1", caldav_filename="e1.ics")

        row = cache.get("e1")
        assert row.sync_status == SyncStatus.SYNCED
        assert row.caldav_filename == "e1.ics"

    def test_mark_synced_skips_newer_local_edit(self, cache):
        cache.upsert_many(
            [make_row("e1", sync_status=SyncStatus.PENDING, local_modified=200)],
            preserve_metadata=False,
        )
        assert not cache.mark_synced("e1", expected_modified=100)
        assert cache.get("e1").sync_status == SyncStatus.PENDING


class TestPruning:
    def test_prune_stale_rows_keeps_pending(self, cache, clock):
        cache.upsert_many(
            [make_row("old"), make_row("local", sync_status=SyncStatus.PENDING)],
            preserve_metadata=False,
        )
        clock.advance(200 * DAY)
        cache.upsert_many([make_row("fresh")], preserve_metadata=False)

        removed = cache.prune_stale_rows(clock() - 183 * DAY)

        assert removed == 1
        assert cache.get_all_ids() == {"local", "fresh"}

    def test_prune_only_synced_tombstones(self, cache, clock):
        cache.upsert_many([make_row("a"), make_row("b")], preserve_metadata=False)
        cache.delete("a")
        cache.delete("b")
        cache.mark_tombstone_synced("a")
        clock.advance(31 * DAY)

        assert cache.prune_synced_tombstones(clock() - 30 * DAY) == 1
        assert cache.get_tombstone("a") is None
        assert cache.get_tombstone("b") is not None


class TestBookkeeping:
    def test_last_synced_at(self, cache, clock):
        assert cache.last_synced_at() is None

        cache.upsert_many([make_row("e1")], preserve_metadata=False)
        assert cache.last_synced_at() == START_TIME

        clock.advance(60)
        cache.mark_sync_completed()
        clock.advance(60)
        cache.upsert_many([make_row("e2")], preserve_metadata=False)
        assert cache.last_synced_at() == START_TIME + 60

    def test_calendar_counts(self, cache):
        cache.upsert_many(
            [make_row("w1"), make_row("w2"), make_row("h1", calendar="home")],
            preserve_metadata=False,
        )
        assert cache.calendar_counts() == {"work": 2, "home": 1}

    def test_query_status(self, cache, db_path):
        cache.upsert_many(
            [make_row("w1"), make_row("w2", sync_status=SyncStatus.PENDING)],
            preserve_metadata=False,
        )
        cache.delete("w1")

        summary = query_status(db_path)
        assert summary["calendars"] == {"work": 1}
        assert summary["pending_writes"] == 1
        assert summary["unsynced_tombstones"] == 1
        assert summary["last_sync_at"] == START_TIME

    def test_query_status_missing_file(self, tmp_path):
        assert query_status(tmp_path / "nope.db") == {}

    def test_unconnected_database_raises(self, db_path):
        with pytest.raises(CacheError):
            CacheDatabase(db_path).get("e1")
