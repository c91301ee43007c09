"""Lifecycle events emitted by a process monitor, and the bus that carries them."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Annotated, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class _Event(BaseModel):
    """Wire format uses camelCase keys (activityId, totalSeconds, ...)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SessionStarted(_Event):
    """A tracked process was launched."""

    kind: Literal["start"] = "start"
    activity_id: int
    instance_id: int | None = None
    start_time: int


class TimeUpdate(_Event):
    """Heartbeat carrying cumulative elapsed seconds of the running session."""

    kind: Literal["update"] = "update"
    activity_id: int
    instance_id: int | None = None
    total_seconds: int


class SessionEnded(_Event):
    """A tracked process exited."""

    kind: Literal["end"] = "end"
    activity_id: int
    instance_id: int | None = None
    start_time: int
    end_time: int
    total_minutes: int = 0
    total_seconds: int


Event = Annotated[
    Union[SessionStarted, TimeUpdate, SessionEnded],
    Field(discriminator="kind"),
]

EVENT_KINDS = ("start", "update", "end")

_EVENT_ADAPTER: TypeAdapter[Event] = TypeAdapter(Event)


def parse_event(raw: str | bytes) -> SessionStarted | TimeUpdate | SessionEnded:
    """Validate one JSON-encoded event.

    Raises:
        pydantic.ValidationError: If the payload is not a known event.
    """
    return _EVENT_ADAPTER.validate_json(raw)


Handler = Callable[[SessionStarted | TimeUpdate | SessionEnded], None]


class EventBus:
    """In-process publish/subscribe channel keyed by event kind."""

    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, kind: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for one event kind.

        Returns:
            A callable that removes the subscription. Calling it twice is harmless.
        """
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {kind}")
        with self._lock:
            self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers[kind]
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self, kind: str) -> int:
        with self._lock:
            return len(self._handlers[kind])

    def publish(self, event: SessionStarted | TimeUpdate | SessionEnded) -> None:
        """Deliver an event to every handler subscribed to its kind.

        A failing handler is logged and does not stop delivery to the others.
        """
        with self._lock:
            handlers = list(self._handlers[event.kind])
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Handler failed for %s event", event.kind)
