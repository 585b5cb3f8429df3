"""
Scheduled visit domain types (``hierarchy_kernel.domain.visit``).

Responsibility
--------------
Pure value objects for the scheduled-visit aggregate: lifecycle status
machine, deadline ledger entries, audit entries and the visit snapshot
returned to callers.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``VISIT_TRANSITIONS`` is the only source of legal status changes.
  ``Completed`` and ``Cancelled`` have no outgoing edges, so ``Cancelled``
  is unreachable from ``Completed``.
* A visit carries exactly one ledger entry per hierarchy role.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID

from hierarchy_kernel.domain.hierarchy import HierarchyRole
from hierarchy_kernel.exceptions import FieldValidationError


class VisitStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class VisitAction(str, Enum):
    """Actions recorded in a visit's audit trail."""

    CREATED = "created"
    ACTIVATED = "activated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DEADLINE_COMPLETED = "deadline_completed"
    DEADLINE_OVERDUE = "deadline_overdue"


VISIT_TRANSITIONS: dict[VisitStatus, frozenset[VisitStatus]] = {
    VisitStatus.DRAFT: frozenset({VisitStatus.ACTIVE, VisitStatus.CANCELLED}),
    VisitStatus.ACTIVE: frozenset({VisitStatus.COMPLETED, VisitStatus.CANCELLED}),
    VisitStatus.COMPLETED: frozenset(),
    VisitStatus.CANCELLED: frozenset(),
}

TERMINAL_VISIT_STATUSES: frozenset[VisitStatus] = frozenset({
    VisitStatus.COMPLETED,
    VisitStatus.CANCELLED,
})


class LedgerEntryStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class DeadlineLedgerEntry:
    """One role's due date on a visit."""

    role: HierarchyRole
    due_at: datetime
    assigned_identity: str | None = None
    entry_status: LedgerEntryStatus = LedgerEntryStatus.PENDING
    completed_at: datetime | None = None


@dataclass(frozen=True)
class VisitAuditEntry:
    """Append-only record of something that happened to a visit."""

    seq: int
    action: VisitAction
    actor_id: str
    actor_role: str
    at: datetime
    note: str = ""


@dataclass(frozen=True)
class ScheduledVisit:
    """Immutable snapshot of a scheduled visit."""

    visit_id: UUID
    title: str
    purpose: str
    visit_date: datetime
    final_deadline: datetime
    state: str
    verticals: tuple[str, ...]
    status: VisitStatus
    created_by: str
    created_at: datetime
    revision: int
    deadline_ledger: tuple[DeadlineLedgerEntry, ...] = ()
    audit_trail: tuple[VisitAuditEntry, ...] = ()
    request_ids: tuple[UUID, ...] = ()

    def ledger_entry(self, role: HierarchyRole) -> DeadlineLedgerEntry:
        for entry in self.deadline_ledger:
            if entry.role is role:
                return entry
        raise KeyError(role)

    @property
    def unassigned_roles(self) -> tuple[HierarchyRole, ...]:
        return tuple(e.role for e in self.deadline_ledger if e.assigned_identity is None)


@dataclass(frozen=True)
class VisitFilter:
    """Filter for listing visits. All criteria are optional and ANDed."""

    status: VisitStatus | None = None
    state: str | None = None
    limit: int = 50


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

TITLE_MIN, TITLE_MAX = 5, 200
PURPOSE_MIN, PURPOSE_MAX = 10, 1000


def validate_text(field_name: str, value: str, min_len: int, max_len: int) -> str:
    """Strip ``value`` and check its length. Returns the stripped text."""
    text = (value or "").strip()
    if len(text) < min_len:
        raise FieldValidationError(field_name, f"must be at least {min_len} characters")
    if len(text) > max_len:
        raise FieldValidationError(field_name, f"must be at most {max_len} characters")
    return text


def normalize_verticals(verticals) -> tuple[str, ...]:
    """De-duplicate verticals keeping first-seen order; at least one required."""
    if isinstance(verticals, str):
        verticals = (verticals,)
    seen: list[str] = []
    for v in verticals or ():
        v = v.strip()
        if v and v not in seen:
            seen.append(v)
    if not seen:
        raise FieldValidationError("verticals", "at least one vertical is required")
    return tuple(seen)
