"""Exceptions raised by playtrack."""

from __future__ import annotations


class PlaytrackError(Exception):
    """Base exception for playtrack errors."""

    pass


class InvalidSessionError(PlaytrackError):
    """Raised when a session violates its contract (e.g. ends before it starts)."""

    def __init__(self, start_time: int, end_time: int) -> None:
        super().__init__(
            f"Session must end after it starts (start={start_time}, end={end_time})"
        )
        self.start_time = start_time
        self.end_time = end_time


class BackupError(PlaytrackError):
    """Raised when a save-data backup cannot be created."""

    pass
