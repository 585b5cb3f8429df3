"""Pure domain layer: value objects, state tables and the cascade calculator."""

from hierarchy_kernel.domain.cascade import (
    CASCADE_ALLOCATIONS,
    CascadeDeadline,
    DeadlineAllocation,
    compute_cascade,
)
from hierarchy_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from hierarchy_kernel.domain.collaborators import (
    DirectoryLookup,
    EngineEvent,
    EventKind,
    EventSink,
    TemplateStore,
)
from hierarchy_kernel.domain.hierarchy import (
    HIERARCHY_CHAIN,
    Actor,
    HierarchyRole,
    RoleAssignment,
    Scope,
    next_in_chain,
    previous_in_chain,
)
from hierarchy_kernel.domain.request import (
    TERMINAL_REQUEST_STATUSES,
    DeadlineAlertSummary,
    HistoryAction,
    RequestFilter,
    RequestHistoryEntry,
    RequestStatus,
    RequestTargets,
    VersionRecord,
    WorkflowRequest,
)
from hierarchy_kernel.domain.visit import (
    VISIT_TRANSITIONS,
    DeadlineLedgerEntry,
    LedgerEntryStatus,
    ScheduledVisit,
    VisitAction,
    VisitAuditEntry,
    VisitFilter,
    VisitStatus,
)

__all__ = [
    "CASCADE_ALLOCATIONS",
    "CascadeDeadline",
    "DeadlineAllocation",
    "compute_cascade",
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "DirectoryLookup",
    "EngineEvent",
    "EventKind",
    "EventSink",
    "TemplateStore",
    "HIERARCHY_CHAIN",
    "Actor",
    "HierarchyRole",
    "RoleAssignment",
    "Scope",
    "next_in_chain",
    "previous_in_chain",
    "TERMINAL_REQUEST_STATUSES",
    "DeadlineAlertSummary",
    "HistoryAction",
    "RequestFilter",
    "RequestHistoryEntry",
    "RequestStatus",
    "RequestTargets",
    "VersionRecord",
    "WorkflowRequest",
    "VISIT_TRANSITIONS",
    "DeadlineLedgerEntry",
    "LedgerEntryStatus",
    "ScheduledVisit",
    "VisitAction",
    "VisitAuditEntry",
    "VisitFilter",
    "VisitStatus",
]
