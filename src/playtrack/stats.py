"""Statistics reconciler: session history -> per-activity aggregate statistics."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Iterable, Protocol

from pydantic import BaseModel

from playtrack.buckets import (
    DailyBucket,
    accumulate,
    ensure_today,
    merge_buckets,
    session_duration_minutes,
    sort_buckets,
    split_session,
)
from playtrack.clock import Clock, SystemClock, local_date_string
from playtrack.db import AggregateStatistics, Session
from playtrack.errors import InvalidSessionError

logger = logging.getLogger(__name__)

# Sessions are read back from the ledger in pages of this size.
SESSION_PAGE_SIZE = 1000


class StatisticsStore(Protocol):
    """Persistence the reconciler needs: the session ledger plus aggregate rows."""

    def append_session(
        self, activity_id: int, start_time: int, end_time: int, duration: int, date: str
    ) -> int: ...

    def list_sessions(self, activity_id: int, limit: int = 10, offset: int = 0) -> list[Session]: ...

    def get_recent_sessions_for_all(
        self, activity_ids: Iterable[int], limit: int = 10
    ) -> list[Session]: ...

    def get_statistics(self, activity_id: int) -> AggregateStatistics | None: ...

    def put_statistics(
        self,
        activity_id: int,
        total_time: int,
        session_count: int,
        last_played: int | None,
        daily_stats: list[DailyBucket],
    ) -> None: ...

    def init_statistics(self, activity_id: int) -> None: ...


class FormattedStats(BaseModel):
    """Read-only display snapshot. Always contains a bucket for today."""

    total_minutes: int
    today_minutes: int
    session_count: int
    last_played: int | None
    daily_stats: list[DailyBucket]


def _is_complete(session: Session) -> bool:
    return (
        session.start_time is not None
        and session.end_time is not None
        and session.duration is not None
        and session.end_time > session.start_time
    )


def compute_statistics(
    activity_id: int,
    sessions: Iterable[Session],
    previous: AggregateStatistics | None,
    today: str,
) -> AggregateStatistics:
    """Recompute an activity's statistics from its full session history.

    Session order does not matter. Incomplete sessions (missing timestamps or
    duration, or ending before they start) are skipped. The previously
    persisted buckets only matter for today: a stored value for today larger
    than the session-derived one is kept so a live counter never regresses.

    Args:
        activity_id: The activity the sessions belong to.
        sessions: Every recorded session for the activity.
        previous: The currently persisted statistics, if any.
        today: Local date (YYYY-MM-DD) treated as "today".

    Returns:
        The new statistics; daily_stats is sorted most recent first.
    """
    complete = []
    for session in sessions:
        if _is_complete(session):
            complete.append(session)
        else:
            logger.debug("Skipping incomplete session %s for activity %s", session.id, activity_id)

    derived = accumulate(
        part
        for session in complete
        for part in split_session(session.start_time, session.end_time, session.duration)
    )
    stored = previous.daily_stats if previous is not None else []
    daily_stats = merge_buckets(derived, stored, today)
    if complete:
        daily_stats = ensure_today(daily_stats, today)

    return AggregateStatistics(
        activity_id=activity_id,
        total_time=sum(session.duration for session in complete),
        session_count=len(complete),
        last_played=max((session.end_time for session in complete), default=None),
        daily_stats=daily_stats,
    )


class StatisticsReconciler:
    """Owns the transition from session history to persisted statistics.

    Recompute-and-persist runs under a per-activity lock, so two session ends
    for the same activity never interleave; different activities do not block
    each other.
    """

    def __init__(self, store: StatisticsStore, *, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def clock(self) -> Clock:
        return self._clock

    def _lock_for(self, activity_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(activity_id)
            if lock is None:
                lock = self._locks[activity_id] = threading.Lock()
            return lock

    def init_statistics(self, activity_id: int) -> None:
        """Ensure a statistics row exists for the activity."""
        self._store.init_statistics(activity_id)

    def load_sessions(self, activity_id: int) -> list[Session]:
        """Read the activity's full session history from the ledger."""
        sessions: list[Session] = []
        offset = 0
        while True:
            page = self._store.list_sessions(activity_id, SESSION_PAGE_SIZE, offset)
            sessions.extend(page)
            if len(page) < SESSION_PAGE_SIZE:
                return sessions
            offset += SESSION_PAGE_SIZE

    def record_session(self, activity_id: int, start_time: int, end_time: int) -> Session:
        """Append a closed session to the ledger and reconcile statistics.

        Raises:
            InvalidSessionError: If end_time is not after start_time.
        """
        if end_time <= start_time:
            raise InvalidSessionError(start_time, end_time)

        duration = session_duration_minutes(start_time, end_time)
        date = local_date_string(end_time)
        with self._lock_for(activity_id):
            session_id = self._store.append_session(
                activity_id, start_time, end_time, duration, date
            )
            self._recompute_locked(activity_id)

        logger.info(
            "Recorded session %s for activity %s: %d min on %s",
            session_id,
            activity_id,
            duration,
            date,
        )
        return Session(
            id=session_id,
            activity_id=activity_id,
            start_time=start_time,
            end_time=end_time,
            duration=duration,
            date=date,
        )

    def recompute(self, activity_id: int) -> AggregateStatistics:
        """Recompute and persist statistics from the full session history."""
        with self._lock_for(activity_id):
            return self._recompute_locked(activity_id)

    def _recompute_locked(self, activity_id: int) -> AggregateStatistics:
        previous = self._store.get_statistics(activity_id)
        sessions = self.load_sessions(activity_id)
        stats = compute_statistics(activity_id, sessions, previous, self._clock.today())
        self._store.put_statistics(
            activity_id,
            stats.total_time,
            stats.session_count,
            stats.last_played,
            stats.daily_stats,
        )
        logger.debug(
            "Reconciled activity %s: %d sessions, %d min total",
            activity_id,
            stats.session_count,
            stats.total_time,
        )
        return stats

    def advance_today(self, activity_id: int, minutes: int) -> AggregateStatistics:
        """Checkpoint a live counter into today's bucket.

        Today's bucket is only ever raised; a value at or below the stored one
        is a no-op.
        """
        with self._lock_for(activity_id):
            current = self._store.get_statistics(activity_id) or AggregateStatistics(
                activity_id=activity_id
            )
            today = self._clock.today()
            totals = {bucket.date: bucket.playtime for bucket in current.daily_stats}
            if minutes <= totals.get(today, 0):
                return current

            totals[today] = minutes
            daily_stats = sort_buckets(totals)
            self._store.put_statistics(
                activity_id,
                current.total_time,
                current.session_count,
                current.last_played,
                daily_stats,
            )
            return current.model_copy(update={"daily_stats": daily_stats})

    def get_statistics(self, activity_id: int) -> AggregateStatistics | None:
        return self._store.get_statistics(activity_id)

    def get_formatted_stats(self, activity_id: int) -> FormattedStats:
        """Snapshot for display. Today's bucket is added (not persisted) if missing."""
        stats = self._store.get_statistics(activity_id)
        today = self._clock.today()
        buckets = stats.daily_stats if stats is not None else []
        today_minutes = next((b.playtime for b in buckets if b.date == today), 0)
        return FormattedStats(
            total_minutes=stats.total_time if stats is not None else 0,
            today_minutes=today_minutes,
            session_count=stats.session_count if stats is not None else 0,
            last_played=stats.last_played if stats is not None else None,
            daily_stats=ensure_today(buckets, today),
        )

    def get_today_playtime(self, activity_id: int) -> int:
        """Minutes recorded for today."""
        return self.get_formatted_stats(activity_id).today_minutes

    def get_sessions(self, activity_id: int, limit: int = 10, offset: int = 0) -> list[Session]:
        return self._store.list_sessions(activity_id, limit, offset)

    def get_recent_sessions_for_all(
        self, activity_ids: Iterable[int], limit: int = 10
    ) -> dict[int, list[Session]]:
        """Most recent sessions grouped by activity ID."""
        ids = list(activity_ids)
        if not ids:
            return {}
        grouped: defaultdict[int, list[Session]] = defaultdict(list)
        for session in self._store.get_recent_sessions_for_all(ids, limit):
            grouped[session.activity_id].append(session)
        return dict(grouped)
