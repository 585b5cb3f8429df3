"""
Workflow request domain types (``hierarchy_kernel.domain.request``).

Responsibility
--------------
Pure value objects for the information-request aggregate: status set,
targets, history and version records, the request snapshot, list filters
and the deadline-alert summary.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* ``TERMINAL_REQUEST_STATUSES`` accept no further approve / reject /
  submit.
* ``version`` starts at 1 and grows by exactly one per submission;
  ``version_history[i].version == i + 2``.
* ``rollback_count <= max_rollback_count``.
* ``current_assignee`` is set iff ``status == IN_PROGRESS``, except on a
  fan-out parent, which stays IN_PROGRESS with no assignee.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from hierarchy_kernel.domain.hierarchy import Actor, HierarchyRole, Scope
from hierarchy_kernel.exceptions import FieldValidationError


class RequestStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    CLOSED = "closed"


TERMINAL_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.CLOSED,
})

ACTIVE_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.OPEN,
    RequestStatus.IN_PROGRESS,
})


class HistoryAction(str, Enum):
    CREATED = "created"
    FORWARDED = "forwarded"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUBMITTED = "submitted"
    DEADLINE_TIGHTENED = "deadline_tightened"
    CLOSED = "closed"


DEFAULT_MAX_ROLLBACK_COUNT = 3


@dataclass(frozen=True)
class RequestTargets:
    """Where the request is aimed. Order matters: the first state/branch is primary."""

    states: tuple[str, ...]
    branches: tuple[str, ...] = ()
    verticals: tuple[str, ...] = ()

    @property
    def primary_state(self) -> str:
        return self.states[0]

    @property
    def primary_branch(self) -> str | None:
        return self.branches[0] if self.branches else None

    @property
    def primary_vertical(self) -> str | None:
        return self.verticals[0] if self.verticals else None

    @property
    def scope(self) -> Scope:
        return Scope(state=self.primary_state, branch=self.primary_branch)

    def for_branch(self, branch: str) -> RequestTargets:
        return RequestTargets(states=self.states, branches=(branch,), verticals=self.verticals)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "states": list(self.states),
            "branches": list(self.branches),
            "verticals": list(self.verticals),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestTargets:
        return cls(
            states=tuple(data.get("states") or ()),
            branches=tuple(data.get("branches") or ()),
            verticals=tuple(data.get("verticals") or ()),
        )


@dataclass(frozen=True)
class RequestHistoryEntry:
    """Append-only record of a request transition."""

    seq: int
    action: HistoryAction
    actor_id: str
    actor_role: str
    at: datetime
    from_stage: HierarchyRole | None = None
    to_stage: HierarchyRole | None = None
    note: str = ""


@dataclass(frozen=True)
class VersionRecord:
    """One submitted data payload. The payload is opaque to the engine."""

    version: int
    payload: Any
    submitted_by: str
    submitted_at: datetime
    note: str = ""


@dataclass(frozen=True)
class WorkflowRequest:
    """Immutable snapshot of a workflow request."""

    request_id: UUID
    title: str
    info_need: str
    timeline: datetime
    targets: RequestTargets
    status: RequestStatus
    current_stage: HierarchyRole
    created_by: str
    created_at: datetime
    revision: int
    deadline: datetime | None = None
    current_assignee: str | None = None
    visit_id: UUID | None = None
    parent_request_id: UUID | None = None
    fan_out_parent: bool = False
    version: int = 1
    rollback_count: int = 0
    max_rollback_count: int = DEFAULT_MAX_ROLLBACK_COUNT
    history: tuple[RequestHistoryEntry, ...] = ()
    version_history: tuple[VersionRecord, ...] = ()

    @property
    def effective_deadline(self) -> datetime:
        return self.deadline or self.timeline

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES


@dataclass(frozen=True)
class RequestFilter:
    """Filter for listing requests. All criteria are optional and ANDed.

    ``visible_to`` applies role-based visibility: PMO and CEO see every
    request, an Advisor sees requests targeting its state, anyone else only
    requests currently assigned to them.
    """

    status: RequestStatus | None = None
    scope_state: str | None = None
    assignee_id: str | None = None
    visit_id: UUID | None = None
    parent_request_id: UUID | None = None
    visible_to: Actor | None = None
    limit: int = 50


@dataclass(frozen=True)
class DeadlineAlertSummary:
    as_of: datetime
    overdue_requests: int
    upcoming_requests: int
    active_visits: int


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

INFO_NEED_MIN, INFO_NEED_MAX = 10, 1000


def normalize_targets(
    states,
    branches=(),
    verticals=(),
) -> RequestTargets:
    """Build RequestTargets, dropping blanks and duplicates; one state required."""

    def _clean(values) -> tuple[str, ...]:
        # A lone name is one target, not a sequence of characters.
        if isinstance(values, str):
            values = (values,)
        out: list[str] = []
        for v in values or ():
            v = v.strip()
            if v and v not in out:
                out.append(v)
        return tuple(out)

    clean_states = _clean(states)
    if not clean_states:
        raise FieldValidationError("targets.states", "at least one state is required")
    return RequestTargets(
        states=clean_states,
        branches=_clean(branches),
        verticals=_clean(verticals),
    )
