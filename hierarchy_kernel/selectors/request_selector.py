"""
Module: hierarchy_kernel.selectors.request_selector
Responsibility: Read access to workflow requests: single lookup, filtered
    listing with role-based visibility, fan-out children, and the deadline
    alert summary.
Architecture position: Kernel > Selectors.  Read-only.

Visibility rules (when ``RequestFilter.visible_to`` is given):
    - PMO and CEO see every request.
    - An Advisor sees requests whose target states include the Advisor's
      state.
    - Anyone else sees only requests currently assigned to them.

Target states live in a JSON column, so state matching is applied after the
SQL filters and before the limit.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select

from hierarchy_kernel.domain.hierarchy import HierarchyRole
from hierarchy_kernel.domain.request import (
    ACTIVE_REQUEST_STATUSES,
    DeadlineAlertSummary,
    RequestFilter,
    RequestStatus,
    WorkflowRequest,
)
from hierarchy_kernel.exceptions import RequestNotFoundError
from hierarchy_kernel.models.workflow_request import WorkflowRequestModel
from hierarchy_kernel.selectors.base import BaseSelector
from hierarchy_kernel.selectors.visit_selector import VisitSelector


class RequestSelector(BaseSelector):
    """Selector for workflow requests."""

    def get(self, request_id: UUID) -> WorkflowRequest:
        model = self.session.get(WorkflowRequestModel, request_id)
        if model is None:
            raise RequestNotFoundError(str(request_id))
        return model.to_dto()

    def list_requests(self, request_filter: RequestFilter | None = None) -> list[WorkflowRequest]:
        """Requests matching the filter, nearest timeline first."""
        f = request_filter or RequestFilter()
        stmt = select(WorkflowRequestModel)
        if f.status is not None:
            stmt = stmt.where(WorkflowRequestModel.status == RequestStatus(f.status).value)
        if f.assignee_id is not None:
            stmt = stmt.where(WorkflowRequestModel.current_assignee == f.assignee_id)
        if f.visit_id is not None:
            stmt = stmt.where(WorkflowRequestModel.visit_id == f.visit_id)
        if f.parent_request_id is not None:
            stmt = stmt.where(WorkflowRequestModel.parent_request_id == f.parent_request_id)

        advisor_state = None
        viewer = f.visible_to
        if viewer is not None:
            role = viewer.hierarchy_role
            if role is HierarchyRole.ADVISOR:
                advisor_state = viewer.state_for(HierarchyRole.ADVISOR)
                if advisor_state is None:
                    return []
            elif role not in (HierarchyRole.PMO, HierarchyRole.CEO):
                stmt = stmt.where(WorkflowRequestModel.current_assignee == viewer.actor_id)

        stmt = stmt.order_by(WorkflowRequestModel.timeline, WorkflowRequestModel.created_at)

        results: list[WorkflowRequest] = []
        if f.limit <= 0:
            return results
        for model in self.session.execute(stmt).scalars():
            states = model.targets.get("states") or ()
            if f.scope_state is not None and f.scope_state not in states:
                continue
            if advisor_state is not None and advisor_state not in states:
                continue
            results.append(model.to_dto())
            if len(results) >= f.limit:
                break
        return results

    def children_of(self, request_id: UUID) -> list[WorkflowRequest]:
        """Fan-out clones of a request, in creation order."""
        stmt = (
            select(WorkflowRequestModel)
            .where(WorkflowRequestModel.parent_request_id == request_id)
            .order_by(WorkflowRequestModel.created_at, WorkflowRequestModel.id)
        )
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def deadline_alerts(
        self,
        as_of: datetime,
        upcoming_window: timedelta = timedelta(hours=24),
    ) -> DeadlineAlertSummary:
        """
        Count overdue and upcoming open requests, and active visits.

        A request's effective deadline is its tightened deadline if set,
        else its timeline.  Overdue: effective deadline before ``as_of``.
        Upcoming: effective deadline in ``[as_of, as_of + upcoming_window]``.
        """
        horizon = as_of + upcoming_window
        rows = self.session.execute(
            select(WorkflowRequestModel.deadline, WorkflowRequestModel.timeline)
            .where(WorkflowRequestModel.status.in_(
                [s.value for s in ACTIVE_REQUEST_STATUSES]
            ))
        ).all()

        overdue = upcoming = 0
        for deadline, timeline in rows:
            effective = deadline or timeline
            if effective < as_of:
                overdue += 1
            elif effective <= horizon:
                upcoming += 1

        return DeadlineAlertSummary(
            as_of=as_of,
            overdue_requests=overdue,
            upcoming_requests=upcoming,
            active_visits=VisitSelector(self.session).count_active(),
        )
