"""Session lifecycle listener.

Consumes start/update/end events for tracked activities, records qualifying
sessions through the statistics reconciler, triggers automatic save-data
backups and notifies observers.
"""

from __future__ import annotations

import logging
import queue
import threading
from enum import Enum
from typing import Callable, Protocol

from playtrack.buckets import session_duration_minutes
from playtrack.db import ActivityConfig
from playtrack.events import EVENT_KINDS, EventBus, SessionEnded, SessionStarted, TimeUpdate
from playtrack.stats import StatisticsReconciler

logger = logging.getLogger(__name__)

# Shorter runs are treated as accidental launches and never recorded.
MIN_SESSION_SECONDS = 60

TimeUpdateCallback = Callable[[int, int, int], None]
SessionEndCallback = Callable[[int, int], None]
ActivityLookup = Callable[[int], ActivityConfig | None]


class BackupAction(Protocol):
    def __call__(self, activity_id: int, source_path: str, silent: bool) -> object: ...


class ActivityState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class ThresholdGate:
    """Filters out sessions shorter than MIN_SESSION_SECONDS."""

    min_seconds = MIN_SESSION_SECONDS

    def accept(self, total_seconds: int) -> bool:
        return total_seconds >= self.min_seconds


class BackupDispatcher:
    """Best-effort automatic backup after a recorded session.

    Never raises: lookup and backup failures are logged and reported as False.
    """

    def __init__(self, get_activity: ActivityLookup | None, backup: BackupAction | None) -> None:
        self._get_activity = get_activity
        self._backup = backup

    def dispatch(self, activity_id: int) -> bool:
        """Run the backup if the activity asks for one. Returns True if it ran."""
        if self._get_activity is None or self._backup is None:
            return False
        try:
            config = self._get_activity(activity_id)
            if config is None:
                logger.error("Activity %s not found; cannot run automatic backup", activity_id)
                return False
            if not (config.auto_backup and config.savepath):
                return False

            logger.info(
                "Starting automatic backup of activity %s from %s", activity_id, config.savepath
            )
            self._backup(activity_id, config.savepath, True)
            logger.info("Automatic backup of activity %s finished", activity_id)
            return True
        except Exception:
            logger.exception("Automatic backup failed for activity %s", activity_id)
            return False


_STOP = object()


class _ActivityChannel:
    """Queue plus worker thread processing one activity's events in order."""

    def __init__(self, activity_id: int, handle: Callable[[object], None]) -> None:
        self._handle = handle
        self._queue: queue.Queue[object] = queue.Queue()
        self._thread = threading.Thread(
            target=self._run,
            name=f"playtrack-activity-{activity_id}",
            daemon=False,
        )
        self._thread.start()

    def put(self, event: object) -> None:
        self._queue.put(event)

    def join(self) -> None:
        """Block until every queued event has been processed."""
        self._queue.join()

    def stop(self, timeout: float | None = None) -> None:
        self._queue.put(_STOP)
        self._thread.join(timeout)

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self._handle(event)
            finally:
                self._queue.task_done()


class PlaytimeTracker:
    """Lifecycle listener driving the session ledger and statistics.

    Each activity moves Idle -> Running on a start event and back to Idle on
    the matching end event. With ``threaded=True`` events are queued on a
    per-activity channel so the publisher never waits on persistence; events
    of one activity are still processed one at a time and in order.

    Observers:
        on_time_update(activity_id, minutes, seconds) on every heartbeat.
        on_session_end(activity_id, minutes_recorded) exactly once per end
        event; minutes_recorded is 0 when the session was not recorded.
    """

    def __init__(
        self,
        reconciler: StatisticsReconciler,
        *,
        get_activity: ActivityLookup | None = None,
        backup: BackupAction | None = None,
        on_time_update: TimeUpdateCallback | None = None,
        on_session_end: SessionEndCallback | None = None,
        threaded: bool = True,
    ) -> None:
        self._reconciler = reconciler
        self._gate = ThresholdGate()
        self._dispatcher = BackupDispatcher(get_activity, backup)
        self._on_time_update = on_time_update
        self._on_session_end = on_session_end
        self._threaded = threaded
        self._states: dict[int, ActivityState] = {}
        self._channels: dict[int, _ActivityChannel] = {}
        self._lock = threading.Lock()
        self._closed = False

    def attach(self, bus: EventBus) -> Callable[[], None]:
        """Subscribe to all lifecycle events on the bus.

        Returns:
            A single teardown callable that unsubscribes every event kind.
        """
        unsubscribers = [bus.subscribe(kind, self.submit) for kind in EVENT_KINDS]

        def teardown() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return teardown

    def state(self, activity_id: int) -> ActivityState:
        return self._states.get(activity_id, ActivityState.IDLE)

    def submit(self, event: SessionStarted | TimeUpdate | SessionEnded) -> None:
        """Accept an event from the source without waiting on persistence."""
        if not self._threaded:
            self.handle(event)
            return

        with self._lock:
            if self._closed:
                logger.warning(
                    "Tracker closed; dropping %s event for activity %s",
                    event.kind,
                    event.activity_id,
                )
                return
            channel = self._channels.get(event.activity_id)
            if channel is None:
                channel = self._channels[event.activity_id] = _ActivityChannel(
                    event.activity_id, self.handle
                )
        channel.put(event)

    def handle(self, event: object) -> None:
        """Process one event to completion. Never raises."""
        if isinstance(event, SessionStarted):
            self._on_start(event)
        elif isinstance(event, TimeUpdate):
            self._on_update(event)
        elif isinstance(event, SessionEnded):
            self._on_end(event)
        else:
            logger.warning("Ignoring unknown event %r", event)

    def join(self) -> None:
        """Wait until all queued events have been processed."""
        with self._lock:
            channels = list(self._channels.values())
        for channel in channels:
            channel.join()

    def close(self, timeout: float | None = None) -> None:
        """Finish queued events and stop the per-activity workers.

        Workers are not daemon threads, so an end event already being
        processed always runs to completion. By default this blocks until
        every worker has exited.
        """
        with self._lock:
            self._closed = True
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            channel.stop(timeout)

    def _on_start(self, event: SessionStarted) -> None:
        try:
            self._states[event.activity_id] = ActivityState.RUNNING
            logger.info(
                "Activity %s started (instance %s)", event.activity_id, event.instance_id
            )
            self._reconciler.init_statistics(event.activity_id)
        except Exception:
            logger.exception("Failed to handle start of activity %s", event.activity_id)

    def _on_update(self, event: TimeUpdate) -> None:
        if self._on_time_update is None:
            return
        try:
            self._on_time_update(event.activity_id, event.total_seconds // 60, event.total_seconds)
        except Exception:
            logger.exception("Failed to handle time update for activity %s", event.activity_id)

    def _on_end(self, event: SessionEnded) -> None:
        try:
            minutes = self._finish_session(event)
        except Exception:
            logger.exception("Failed to handle end of activity %s", event.activity_id)
            minutes = 0
        self._notify_session_end(event.activity_id, minutes)

    def _finish_session(self, event: SessionEnded) -> int:
        previous = self._states.pop(event.activity_id, ActivityState.IDLE)
        if previous is not ActivityState.RUNNING:
            logger.debug("Activity %s ended without a recorded start", event.activity_id)

        if not self._gate.accept(event.total_seconds):
            logger.info(
                "Session of activity %s too short (%ss); not recorded",
                event.activity_id,
                event.total_seconds,
            )
            return 0
        if event.end_time <= event.start_time:
            logger.warning(
                "Session of activity %s ends before it starts (%s <= %s); discarded",
                event.activity_id,
                event.end_time,
                event.start_time,
            )
            return 0
        if session_duration_minutes(event.start_time, event.end_time) == 0:
            logger.warning(
                "Session of activity %s rounds to 0 minutes (%ss between timestamps); discarded",
                event.activity_id,
                event.end_time - event.start_time,
            )
            return 0

        session = self._reconciler.record_session(
            event.activity_id, event.start_time, event.end_time
        )
        self._dispatcher.dispatch(event.activity_id)
        return session.duration

    def _notify_session_end(self, activity_id: int, minutes: int) -> None:
        if self._on_session_end is None:
            return
        try:
            self._on_session_end(activity_id, minutes)
        except Exception:
            logger.exception("Session end observer failed for activity %s", activity_id)
