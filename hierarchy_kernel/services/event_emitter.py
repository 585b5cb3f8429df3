"""
EventEmitter -- outbound audit / notification events.

Responsibility:
    Wraps an injected EventSink.  Builds EngineEvent records stamped by the
    injected clock and the current correlation id, and delivers them through
    the CollaboratorGateway with a bounded timeout.

Architecture position:
    Kernel > Services.  Called only after the aggregate change has been
    committed, so a slow or failing sink can never roll back a transition.

Invariants enforced:
    - Events are never dropped silently: a failed delivery is logged as
      ``event_delivery_failed`` with the event kind and payload.
    - Delivery is never retried and never raises to the caller.
"""

from __future__ import annotations

from typing import Any, Iterable

from hierarchy_kernel.domain.clock import Clock, SystemClock
from hierarchy_kernel.domain.collaborators import EngineEvent, EventKind, EventSink
from hierarchy_kernel.exceptions import DependencyUnavailableError
from hierarchy_kernel.logging_config import LogContext, get_logger
from hierarchy_kernel.services.collaborator_gateway import CollaboratorGateway

logger = get_logger("services.event_emitter")


class EventEmitter:
    def __init__(
        self,
        sink: EventSink,
        gateway: CollaboratorGateway,
        clock: Clock | None = None,
        timeout_seconds: float = 1.0,
    ):
        self._sink = sink
        self._gateway = gateway
        self._clock = clock or SystemClock()
        self._timeout = timeout_seconds

    def emit(self, kind: EventKind, payload: dict[str, Any]) -> bool:
        """Deliver one event. Returns False if delivery failed."""
        event = EngineEvent(
            kind=kind,
            occurred_at=self._clock.now(),
            payload=dict(payload),
            correlation_id=LogContext.get_all().get("correlation_id"),
        )
        try:
            self._gateway.call(
                "event_sink", kind.value, self._sink.emit, event,
                timeout=self._timeout,
            )
        except DependencyUnavailableError as exc:
            logger.error(
                "event_delivery_failed",
                extra={
                    "event_kind": kind.value,
                    "payload": event.payload,
                    "reason": exc.reason,
                },
            )
            return False
        logger.debug("event_emitted", extra={"event_kind": kind.value})
        return True

    def emit_all(self, events: Iterable[tuple[EventKind, dict[str, Any]]]) -> int:
        """Deliver events in order. Returns the number delivered."""
        delivered = 0
        for kind, payload in events:
            if self.emit(kind, payload):
                delivered += 1
        return delivered
