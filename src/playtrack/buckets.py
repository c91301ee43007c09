"""Daily bucket model: splitting sessions across local calendar days."""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, time
from typing import Iterable

from pydantic import BaseModel

from playtrack.clock import local_date_string


class DailyBucket(BaseModel):
    """Minutes of play attributed to one local calendar date."""

    date: str
    playtime: int = 0


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up (round() rounds to even)."""
    return int(math.floor(value + 0.5))


def session_duration_minutes(start_time: int, end_time: int) -> int:
    """Whole minutes recorded for a session."""
    return round_half_up((end_time - start_time) / 60)


def local_midnight(timestamp: float) -> int:
    """Unix timestamp of local midnight starting the day that contains timestamp."""
    day = datetime.fromtimestamp(timestamp).date()
    return int(datetime.combine(day, time.min).timestamp())


def split_session(start_time: int, end_time: int, duration: int) -> list[tuple[str, int]]:
    """Attribute a session's minutes to one or two local dates.

    A session that crosses local midnight is split in proportion to the seconds
    spent on each side of the midnight that starts the end date. The parts
    always add up to exactly ``duration``.

    Returns:
        List of (date, minutes) pairs, start date first.
    """
    start_date = local_date_string(start_time)
    end_date = local_date_string(end_time)
    if start_date == end_date:
        return [(start_date, duration)]

    total_seconds = end_time - start_time
    first_day_seconds = local_midnight(end_time) - start_time
    first_day_minutes = round_half_up(first_day_seconds / total_seconds * duration)
    second_day_minutes = duration - first_day_minutes
    return [(start_date, first_day_minutes), (end_date, second_day_minutes)]


def accumulate(parts: Iterable[tuple[str, int]]) -> dict[str, int]:
    """Sum (date, minutes) pairs into a date -> minutes mapping."""
    totals: defaultdict[str, int] = defaultdict(int)
    for date, minutes in parts:
        totals[date] += minutes
    return dict(totals)


def merge_buckets(
    derived: dict[str, int],
    stored: Iterable[DailyBucket],
    today: str,
) -> list[DailyBucket]:
    """Merge session-derived minutes into a previously stored bucket set.

    Session-derived values are authoritative for every date except today,
    where the larger of the stored and derived values wins so a live counter
    never moves backwards. Stored dates other than today without sessions are
    dropped.
    """
    merged = dict(derived)
    for bucket in stored:
        if bucket.date == today:
            merged[today] = max(bucket.playtime, merged.get(today, 0))
    return sort_buckets(merged)


def sort_buckets(totals: dict[str, int]) -> list[DailyBucket]:
    """Buckets ordered most recent date first."""
    return [
        DailyBucket(date=date, playtime=playtime)
        for date, playtime in sorted(totals.items(), key=lambda item: item[0], reverse=True)
    ]


def ensure_today(buckets: list[DailyBucket], today: str) -> list[DailyBucket]:
    """Return buckets with a zero entry for today if none exists, keeping order."""
    if any(bucket.date == today for bucket in buckets):
        return list(buckets)
    return sort_buckets({**{b.date: b.playtime for b in buckets}, today: 0})
