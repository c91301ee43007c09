"""Tests for the SQLite session ledger and statistics store."""

import logging
import sqlite3

import pytest

from playtrack.buckets import DailyBucket
from playtrack.db import StatsStore


def add_session(store: StatsStore, activity_id: int, start: int, minutes: int) -> int:
    """Helper to append a session of `minutes` starting at `start`."""
    return store.append_session(activity_id, start, start + minutes * 60, minutes, "2025-01-25")


class TestActivities:
    """Tests for activity configuration rows."""

    def test_add_and_get_activity(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game", savepath="/saves/game", auto_backup=True)

        activity = store.get_activity(activity_id)
        assert activity is not None
        assert activity.name == "Game"
        assert activity.auto_backup is True
        assert activity.savepath == "/saves/game"

    def test_get_missing_activity_returns_none(self):
        store = StatsStore.open_in_memory()
        assert store.get_activity(42) is None

    def test_get_activities_ordered_by_id(self):
        store = StatsStore.open_in_memory()
        store.add_activity("First")
        store.add_activity("Second")
        assert [a.name for a in store.get_activities()] == ["First", "Second"]


class TestSessionLedger:
    """Tests for appending and listing sessions."""

    def test_append_session_returns_id(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        first = add_session(store, activity_id, 1_000_000, 30)
        second = add_session(store, activity_id, 1_010_000, 30)
        assert second > first

    def test_foreign_key_rejects_unknown_activity(self):
        """Sessions must reference an existing activity."""
        store = StatsStore.open_in_memory()
        with pytest.raises(sqlite3.IntegrityError):
            add_session(store, 999, 1_000_000, 30)

    def test_list_sessions_most_recent_first(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        add_session(store, activity_id, 1_000_000, 10)
        add_session(store, activity_id, 3_000_000, 30)
        add_session(store, activity_id, 2_000_000, 20)

        sessions = store.list_sessions(activity_id, 10, 0)
        assert [s.duration for s in sessions] == [30, 20, 10]
        assert all(s.activity_id == activity_id for s in sessions)

    def test_list_sessions_limit_and_offset(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        for i in range(5):
            add_session(store, activity_id, 1_000_000 + i * 10_000, i + 1)

        page = store.list_sessions(activity_id, 2, 1)
        assert [s.duration for s in page] == [4, 3]

    def test_recent_sessions_for_all_limits_per_activity(self):
        store = StatsStore.open_in_memory()
        a = store.add_activity("A")
        b = store.add_activity("B")
        for i in range(4):
            add_session(store, a, 1_000_000 + i * 10_000, 10 + i)
        add_session(store, b, 1_000_000, 5)

        sessions = store.get_recent_sessions_for_all([a, b], limit=2)
        by_activity = [(s.activity_id, s.duration) for s in sessions]
        assert by_activity == [(a, 13), (a, 12), (b, 5)]

    def test_delete_session(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        session_id = add_session(store, activity_id, 1_000_000, 10)

        assert store.delete_session(session_id) is True
        assert store.delete_session(session_id) is False
        assert store.list_sessions(activity_id) == []


class TestStatistics:
    """Tests for aggregate statistics rows."""

    def test_missing_statistics_returns_none(self):
        store = StatsStore.open_in_memory()
        assert store.get_statistics(1) is None

    def test_init_statistics_is_idempotent(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        store.init_statistics(activity_id)
        store.put_statistics(activity_id, 30, 1, 1_000_000, [])
        store.init_statistics(activity_id)

        stats = store.get_statistics(activity_id)
        assert stats.total_time == 30
        assert stats.session_count == 1

    def test_init_statistics_zeroed(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        store.init_statistics(activity_id)

        stats = store.get_statistics(activity_id)
        assert stats.total_time == 0
        assert stats.session_count == 0
        assert stats.last_played is None
        assert stats.daily_stats == []

    def test_put_statistics_replaces_row(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        store.put_statistics(activity_id, 10, 1, 100, [DailyBucket(date="2025-01-24", playtime=10)])
        store.put_statistics(
            activity_id,
            40,
            2,
            200,
            [
                DailyBucket(date="2025-01-25", playtime=30),
                DailyBucket(date="2025-01-24", playtime=10),
            ],
        )

        stats = store.get_statistics(activity_id)
        assert stats.total_time == 40
        assert stats.session_count == 2
        assert stats.last_played == 200
        assert [(b.date, b.playtime) for b in stats.daily_stats] == [
            ("2025-01-25", 30),
            ("2025-01-24", 10),
        ]

    def test_legacy_mapping_daily_stats_is_read(self):
        """daily_stats stored as {date: minutes} is still readable."""
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        store._conn.execute(
            "INSERT INTO statistics (activity_id, total_time, session_count, daily_stats)"
            " VALUES (?, 15, 1, ?)",
            (activity_id, '{"2025-01-25": 15}'),
        )
        store._conn.commit()

        stats = store.get_statistics(activity_id)
        assert stats.daily_stats == [DailyBucket(date="2025-01-25", playtime=15)]

    def test_unreadable_daily_stats_is_empty(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        store._conn.execute(
            "INSERT INTO statistics (activity_id, daily_stats) VALUES (?, ?)",
            (activity_id, "not json"),
        )
        store._conn.commit()

        assert store.get_statistics(activity_id).daily_stats == []

    def test_fractional_playtime_is_rounded(self):
        """A non-integer playtime keeps the whole list, today's floor included."""
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        store._conn.execute(
            "INSERT INTO statistics (activity_id, daily_stats) VALUES (?, ?)",
            (
                activity_id,
                '[{"date": "2025-01-26", "playtime": 45.5}, {"date": "2025-01-25", "playtime": 30}]',
            ),
        )
        store._conn.commit()

        assert store.get_statistics(activity_id).daily_stats == [
            DailyBucket(date="2025-01-26", playtime=46),
            DailyBucket(date="2025-01-25", playtime=30),
        ]

    def test_unreadable_entries_are_dropped_individually(self, caplog):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        store._conn.execute(
            "INSERT INTO statistics (activity_id, daily_stats) VALUES (?, ?)",
            (
                activity_id,
                '[{"date": "2025-01-26", "playtime": "lots"}, 7,'
                ' {"playtime": 5}, {"date": "2025-01-25", "playtime": 30}]',
            ),
        )
        store._conn.commit()

        with caplog.at_level(logging.WARNING):
            stats = store.get_statistics(activity_id)

        assert stats.daily_stats == [DailyBucket(date="2025-01-25", playtime=30)]
        assert "Dropped 3 unreadable daily_stats entries" in caplog.text

    def test_legacy_mapping_with_fractional_minutes(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        store._conn.execute(
            "INSERT INTO statistics (activity_id, daily_stats) VALUES (?, ?)",
            (activity_id, '{"2025-01-25": 12.5, "2025-01-24": 3}'),
        )
        store._conn.commit()

        assert store.get_statistics(activity_id).daily_stats == [
            DailyBucket(date="2025-01-25", playtime=13),
            DailyBucket(date="2025-01-24", playtime=3),
        ]

    def test_get_all_and_delete_statistics(self):
        store = StatsStore.open_in_memory()
        a = store.add_activity("A")
        b = store.add_activity("B")
        store.put_statistics(a, 10, 1, 100, [])
        store.put_statistics(b, 20, 1, 200, [])

        assert [s.activity_id for s in store.get_all_statistics()] == [b, a]
        assert store.delete_statistics(a) is True
        assert [s.activity_id for s in store.get_all_statistics()] == [b]

    def test_deleting_activity_cascades(self):
        store = StatsStore.open_in_memory()
        activity_id = store.add_activity("Game")
        add_session(store, activity_id, 1_000_000, 10)
        store.init_statistics(activity_id)

        store._conn.execute("DELETE FROM activities WHERE id = ?", (activity_id,))
        store._conn.commit()

        assert store.list_sessions(activity_id) == []
        assert store.get_statistics(activity_id) is None


class TestStoreLifecycle:
    """Tests for opening and closing stores."""

    def test_open_file_database_persists(self, tmp_path):
        db_path = tmp_path / "stats.db"
        with StatsStore.open(db_path) as store:
            activity_id = store.add_activity("Game")
            store.init_statistics(activity_id)

        with StatsStore.open(db_path) as store:
            assert store.get_statistics(activity_id) is not None
