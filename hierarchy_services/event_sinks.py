"""
hierarchy_services.event_sinks -- Reference ``EventSink`` implementations.

* ``LoggingEventSink`` writes each event as a structured log record.
* ``RecordingEventSink`` keeps events in memory for inspection; it can be
  switched into a failing mode to exercise delivery-failure handling.
"""

from __future__ import annotations

import threading

from hierarchy_kernel.domain.collaborators import EngineEvent, EventKind
from hierarchy_kernel.logging_config import get_logger

logger = get_logger("events")


class EventDeliveryError(RuntimeError):
    """Raised by a sink that cannot accept an event."""


class LoggingEventSink:
    """Writes every event to the ``hierarchy_kernel.events`` logger."""

    def emit(self, event: EngineEvent) -> None:
        logger.info(
            "engine_event",
            extra={
                "event_kind": event.kind.value,
                "occurred_at": event.occurred_at,
                "payload": event.payload,
            },
        )


class RecordingEventSink:
    """Thread-safe in-memory sink."""

    def __init__(self, fail: bool = False):
        self._lock = threading.Lock()
        self._events: list[EngineEvent] = []
        self.fail = fail

    def emit(self, event: EngineEvent) -> None:
        if self.fail:
            raise EventDeliveryError(f"sink refused {event.kind.value}")
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[EngineEvent]:
        with self._lock:
            return list(self._events)

    def of_kind(self, kind: EventKind) -> list[EngineEvent]:
        return [e for e in self.events if e.kind is kind]

    def kinds(self) -> list[EventKind]:
        return [e.kind for e in self.events]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
