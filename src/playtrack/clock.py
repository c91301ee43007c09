"""Wall-clock access for the statistics engine.

Everything that needs "now" or "today" goes through a Clock so that the
reconciler stays deterministic under test.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Protocol


def local_date_string(timestamp: float | None = None) -> str:
    """Return the local calendar date (YYYY-MM-DD) of a Unix timestamp.

    Args:
        timestamp: Unix epoch seconds (default: now).
    """
    if timestamp is None:
        dt = datetime.now()
    else:
        dt = datetime.fromtimestamp(timestamp)
    return dt.strftime("%Y-%m-%d")


class Clock(Protocol):
    def now(self) -> int: ...

    def today(self) -> str: ...


class SystemClock:
    """Clock backed by the local system time."""

    def now(self) -> int:
        return int(time.time())

    def today(self) -> str:
        return local_date_string()


class FixedClock:
    """Clock pinned to a given timestamp. Used by tests and replays."""

    def __init__(self, timestamp: float) -> None:
        self.timestamp = int(timestamp)

    def now(self) -> int:
        return self.timestamp

    def today(self) -> str:
        return local_date_string(self.timestamp)

    def advance(self, seconds: int) -> None:
        self.timestamp += seconds
