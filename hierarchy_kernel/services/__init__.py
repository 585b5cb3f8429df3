"""Services for the hierarchy kernel (write side)."""

from hierarchy_kernel.services.aggregate_locks import AggregateLockRegistry
from hierarchy_kernel.services.assignee_resolver import AssigneeResolver
from hierarchy_kernel.services.collaborator_gateway import CollaboratorGateway
from hierarchy_kernel.services.event_emitter import EventEmitter
from hierarchy_kernel.services.visit_service import VisitService
from hierarchy_kernel.services.workflow_service import WorkflowService

__all__ = [
    "AggregateLockRegistry",
    "AssigneeResolver",
    "CollaboratorGateway",
    "EventEmitter",
    "VisitService",
    "WorkflowService",
]
