"""ORM models for the hierarchy kernel."""

from hierarchy_kernel.models.visit import (
    ScheduledVisitModel,
    VisitAuditEntryModel,
    VisitDeadlineLedgerModel,
)
from hierarchy_kernel.models.workflow_request import (
    WorkflowRequestHistoryModel,
    WorkflowRequestModel,
    WorkflowRequestVersionModel,
)

__all__ = [
    "ScheduledVisitModel",
    "VisitAuditEntryModel",
    "VisitDeadlineLedgerModel",
    "WorkflowRequestHistoryModel",
    "WorkflowRequestModel",
    "WorkflowRequestVersionModel",
]
