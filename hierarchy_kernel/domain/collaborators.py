"""
Collaborator contracts (``hierarchy_kernel.domain.collaborators``).

Responsibility
--------------
Structural protocols for the external systems the engine consumes, plus
the outbound event record.  The engine is handed implementations through
its constructors; there is no process-wide registry.

* ``DirectoryLookup`` -- who holds role R in a scope.
* ``TemplateStore`` -- does an active form template exist for
  (state, vertical).
* ``EventSink`` -- accepts audit / notification events.  Delivery
  failures are the sink's to log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from hierarchy_kernel.domain.hierarchy import HierarchyRole, Scope


@runtime_checkable
class DirectoryLookup(Protocol):
    """Pluggable interface for identity / role directory lookups."""

    def resolve(self, role: HierarchyRole, scope: Scope) -> str | None:
        """Return the identity holding ``role`` in ``scope``, or None."""
        ...

    def identities_with_role(self, role: HierarchyRole) -> frozenset[str]:
        """Return every identity holding ``role`` in any scope."""
        ...


@runtime_checkable
class TemplateStore(Protocol):
    def has_active_template(self, state: str, vertical: str | None) -> bool:
        ...


@runtime_checkable
class EventSink(Protocol):
    def emit(self, event: EngineEvent) -> None:
        ...


class EventKind(str, Enum):
    VISIT_CREATED = "visit_created"
    VISIT_ACTIVATED = "visit_activated"
    VISIT_COMPLETED = "visit_completed"
    VISIT_CANCELLED = "visit_cancelled"
    DEADLINE_COMPLETED = "deadline_completed"
    DEADLINE_OVERDUE = "deadline_overdue"
    REQUEST_CREATED = "request_created"
    REQUEST_ASSIGNED = "request_assigned"
    REQUEST_FORWARDED = "request_forwarded"
    REQUEST_APPROVED = "request_approved"
    REQUEST_REJECTED = "request_rejected"
    REQUEST_SUBMITTED = "request_submitted"
    REQUEST_CLOSED = "request_closed"


@dataclass(frozen=True)
class EngineEvent:
    """Structured action record handed to the event sink."""

    kind: EventKind
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None
