"""SQLite session ledger and statistics store for playtrack."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, TypeAdapter

from playtrack.buckets import DailyBucket, round_half_up


class Session(BaseModel):
    """One closed play interval for one activity.

    Timestamps and duration are optional because rows may come from an
    external ledger; the reconciler skips incomplete rows.
    """

    id: int | None = None
    activity_id: int
    start_time: int | None
    end_time: int | None
    duration: int | None
    date: str | None = None


class AggregateStatistics(BaseModel):
    """Per-activity totals recomputed from the session history."""

    activity_id: int
    total_time: int = 0
    session_count: int = 0
    last_played: int | None = None
    daily_stats: list[DailyBucket] = []


class ActivityConfig(BaseModel):
    """Tracked activity and the settings the side-effect dispatcher reads."""

    id: int
    name: str
    auto_backup: bool = False
    savepath: str | None = None


SCHEMA = """
CREATE TABLE IF NOT EXISTS activities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    auto_backup INTEGER NOT NULL DEFAULT 0,
    savepath TEXT,
    created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE TABLE IF NOT EXISTS sessions (
    session_id INTEGER PRIMARY KEY AUTOINCREMENT,
    activity_id INTEGER NOT NULL,
    start_time INTEGER NOT NULL,
    end_time INTEGER NOT NULL,
    duration INTEGER NOT NULL,
    date TEXT NOT NULL,
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    FOREIGN KEY (activity_id) REFERENCES activities(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS statistics (
    activity_id INTEGER PRIMARY KEY,
    total_time INTEGER NOT NULL DEFAULT 0,
    session_count INTEGER NOT NULL DEFAULT 0,
    last_played INTEGER,
    daily_stats TEXT NOT NULL DEFAULT '[]',
    FOREIGN KEY (activity_id) REFERENCES activities(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_sessions_activity ON sessions(activity_id);
CREATE INDEX IF NOT EXISTS idx_sessions_date ON sessions(date);
CREATE INDEX IF NOT EXISTS idx_sessions_start_time ON sessions(start_time);
CREATE INDEX IF NOT EXISTS idx_statistics_last_played ON statistics(last_played);
"""

logger = logging.getLogger(__name__)

_BUCKETS = TypeAdapter(list[DailyBucket])


def _session_from_row(row: sqlite3.Row) -> Session:
    return Session(
        id=row["session_id"],
        activity_id=row["activity_id"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        duration=row["duration"],
        date=row["date"],
    )


def _activity_from_row(row: sqlite3.Row) -> ActivityConfig:
    return ActivityConfig(
        id=row["id"],
        name=row["name"],
        auto_backup=bool(row["auto_backup"]),
        savepath=row["savepath"],
    )


def _parse_daily_stats(raw: str | None, activity_id: int) -> list[DailyBucket]:
    """Decode the stored daily_stats column.

    Accepts the current list form and the legacy {date: minutes} mapping.
    Entries are read one at a time: fractional minutes are rounded half up
    and only unreadable entries are dropped. A value that is not JSON, or
    neither a list nor a mapping, decodes to an empty list.
    """
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Unreadable daily_stats for activity %s; treating as empty", activity_id)
        return []

    if isinstance(parsed, dict):
        parsed = [{"date": date, "playtime": playtime} for date, playtime in parsed.items()]
    if not isinstance(parsed, list):
        logger.warning("Unreadable daily_stats for activity %s; treating as empty", activity_id)
        return []

    buckets: list[DailyBucket] = []
    dropped = 0
    for entry in parsed:
        try:
            buckets.append(_parse_bucket(entry))
        except (TypeError, ValueError, OverflowError):
            dropped += 1
    if dropped:
        logger.warning(
            "Dropped %d unreadable daily_stats entries for activity %s", dropped, activity_id
        )
    return buckets


def _parse_bucket(entry: object) -> DailyBucket:
    """Validate one stored bucket, rounding a numeric playtime to whole minutes.

    Raises:
        TypeError: If the entry is not a mapping.
        ValueError: If the entry fails validation (pydantic.ValidationError).
    """
    if not isinstance(entry, dict):
        raise TypeError(f"Bucket must be an object, got {type(entry).__name__}")
    playtime = entry.get("playtime", 0)
    if isinstance(playtime, float):
        playtime = round_half_up(playtime)
    return DailyBucket.model_validate({"date": entry.get("date"), "playtime": playtime})


class StatsStore:
    """SQLite-backed session ledger and aggregate statistics store.

    A single connection is shared between threads; every statement runs under
    an internal lock.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def __enter__(self) -> "StatsStore":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path) -> StatsStore:
        """Open or create a database at the given path."""
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> StatsStore:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    # Activities

    def add_activity(
        self,
        name: str,
        *,
        savepath: str | None = None,
        auto_backup: bool = False,
    ) -> int:
        """Register a tracked activity and return its ID."""
        with self._lock:
            cursor = self._conn.execute(
                "INSERT INTO activities (name, auto_backup, savepath) VALUES (?, ?, ?)",
                (name, 1 if auto_backup else 0, savepath),
            )
            self._conn.commit()
            return int(cursor.lastrowid)

    def get_activity(self, activity_id: int) -> ActivityConfig | None:
        """Get an activity's configuration, or None if it does not exist."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM activities WHERE id = ?", (activity_id,)
            ).fetchone()
        if row is None:
            return None
        return _activity_from_row(row)

    def get_activities(self) -> list[ActivityConfig]:
        """Get all activities ordered by ID."""
        with self._lock:
            rows = self._conn.execute("SELECT * FROM activities ORDER BY id").fetchall()
        return [_activity_from_row(row) for row in rows]

    # Session ledger

    def append_session(
        self,
        activity_id: int,
        start_time: int,
        end_time: int,
        duration: int,
        date: str,
    ) -> int:
        """Append a closed session. Returns the new session ID."""
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO sessions (activity_id, start_time, end_time, duration, date)
                VALUES (?, ?, ?, ?, ?)
                """,
                (activity_id, start_time, end_time, duration, date),
            )
            self._conn.commit()
            return int(cursor.lastrowid)

    def list_sessions(self, activity_id: int, limit: int = 10, offset: int = 0) -> list[Session]:
        """Get sessions for an activity, most recent start first.

        Args:
            activity_id: The activity ID.
            limit: Maximum number of sessions to return.
            offset: Number of sessions to skip.
        """
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT * FROM sessions
                WHERE activity_id = ?
                ORDER BY start_time DESC, session_id DESC
                LIMIT ? OFFSET ?
                """,
                (activity_id, limit, offset),
            ).fetchall()
        return [_session_from_row(row) for row in rows]

    def get_recent_sessions_for_all(
        self, activity_ids: Iterable[int], limit: int = 10
    ) -> list[Session]:
        """Get up to `limit` most recent sessions for each of the given activities.

        Uses batching (500 IDs per query) to stay under SQLite's 999-parameter limit.
        """
        ids = list(activity_ids)
        sessions: list[Session] = []
        batch_size = 500
        for i in range(0, len(ids), batch_size):
            batch = ids[i : i + batch_size]
            placeholders = ",".join("?" * len(batch))
            with self._lock:
                rows = self._conn.execute(
                    f"""
                    SELECT * FROM (
                        SELECT s.*, ROW_NUMBER() OVER (
                            PARTITION BY activity_id
                            ORDER BY start_time DESC, session_id DESC
                        ) AS rn
                        FROM sessions s
                        WHERE activity_id IN ({placeholders})
                    )
                    WHERE rn <= ?
                    ORDER BY activity_id, start_time DESC
                    """,
                    [*batch, limit],
                ).fetchall()
            sessions.extend(_session_from_row(row) for row in rows)
        return sessions

    def delete_session(self, session_id: int) -> bool:
        """Delete a session. Returns True if a row was removed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM sessions WHERE session_id = ?", (session_id,)
            )
            self._conn.commit()
        return cursor.rowcount > 0

    # Aggregate statistics

    def init_statistics(self, activity_id: int) -> None:
        """Create a zeroed statistics row if none exists (idempotent)."""
        with self._lock:
            self._conn.execute(
                """
                INSERT OR IGNORE INTO statistics
                (activity_id, total_time, session_count, last_played, daily_stats)
                VALUES (?, 0, 0, NULL, '[]')
                """,
                (activity_id,),
            )
            self._conn.commit()

    def get_statistics(self, activity_id: int) -> AggregateStatistics | None:
        """Get the persisted statistics for an activity, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM statistics WHERE activity_id = ?", (activity_id,)
            ).fetchone()
        if row is None:
            return None
        return self._statistics_from_row(row)

    def get_all_statistics(self) -> list[AggregateStatistics]:
        """Get statistics for every activity, most recently played first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM statistics ORDER BY last_played DESC"
            ).fetchall()
        return [self._statistics_from_row(row) for row in rows]

    def put_statistics(
        self,
        activity_id: int,
        total_time: int,
        session_count: int,
        last_played: int | None,
        daily_stats: list[DailyBucket],
    ) -> None:
        """Replace the statistics row for an activity in one transaction."""
        payload = _BUCKETS.dump_json(daily_stats).decode()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO statistics
                (activity_id, total_time, session_count, last_played, daily_stats)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(activity_id) DO UPDATE SET
                    total_time = excluded.total_time,
                    session_count = excluded.session_count,
                    last_played = excluded.last_played,
                    daily_stats = excluded.daily_stats
                """,
                (activity_id, total_time, session_count, last_played, payload),
            )

    def delete_statistics(self, activity_id: int) -> bool:
        """Delete the statistics row for an activity."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM statistics WHERE activity_id = ?", (activity_id,)
            )
            self._conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _statistics_from_row(row: sqlite3.Row) -> AggregateStatistics:
        return AggregateStatistics(
            activity_id=row["activity_id"],
            total_time=row["total_time"] or 0,
            session_count=row["session_count"] or 0,
            last_played=row["last_played"],
            daily_stats=_parse_daily_stats(row["daily_stats"], row["activity_id"]),
        )
