"""
Module: hierarchy_kernel.selectors.visit_selector
Responsibility: Read access to scheduled visits: single lookup with linked
    request ids, and filtered listing with role-based visibility.
Architecture position: Kernel > Selectors.  Read-only.

Visibility rules (when a viewing actor is given):
    - PMO and CEO see every visit.
    - An Advisor sees visits in the Advisor's state.
    - Anyone else sees visits where they are assigned a ledger entry.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import exists, false, func, select

from hierarchy_kernel.domain.hierarchy import Actor, HierarchyRole
from hierarchy_kernel.domain.visit import ScheduledVisit, VisitFilter, VisitStatus
from hierarchy_kernel.exceptions import VisitNotFoundError
from hierarchy_kernel.models.visit import ScheduledVisitModel, VisitDeadlineLedgerModel
from hierarchy_kernel.models.workflow_request import WorkflowRequestModel
from hierarchy_kernel.selectors.base import BaseSelector


class VisitSelector(BaseSelector):
    """Selector for scheduled visits."""

    def get(self, visit_id: UUID) -> ScheduledVisit:
        model = self.session.get(ScheduledVisitModel, visit_id)
        if model is None:
            raise VisitNotFoundError(str(visit_id))
        return model.to_dto(self.request_ids_for(visit_id))

    def request_ids_for(self, visit_id: UUID) -> tuple[UUID, ...]:
        return tuple(self.session.execute(
            select(WorkflowRequestModel.id)
            .where(WorkflowRequestModel.visit_id == visit_id)
            .order_by(WorkflowRequestModel.created_at, WorkflowRequestModel.id)
        ).scalars())

    def list_visits(
        self,
        visit_filter: VisitFilter | None = None,
        viewer: Actor | None = None,
    ) -> list[ScheduledVisit]:
        """Visits matching the filter, soonest visit date first."""
        visit_filter = visit_filter or VisitFilter()
        stmt = select(ScheduledVisitModel)
        if visit_filter.status is not None:
            stmt = stmt.where(ScheduledVisitModel.status == VisitStatus(visit_filter.status).value)
        if visit_filter.state is not None:
            stmt = stmt.where(ScheduledVisitModel.state == visit_filter.state)
        if viewer is not None:
            stmt = self._visible_to(stmt, viewer)
        stmt = stmt.order_by(
            ScheduledVisitModel.visit_date, ScheduledVisitModel.id,
        ).limit(visit_filter.limit)

        return [
            model.to_dto(self.request_ids_for(model.id))
            for model in self.session.execute(stmt).scalars()
        ]

    def count_active(self) -> int:
        return self.session.execute(
            select(func.count(ScheduledVisitModel.id))
            .where(ScheduledVisitModel.status == VisitStatus.ACTIVE.value)
        ).scalar_one()

    @staticmethod
    def _visible_to(stmt, viewer: Actor):
        role = viewer.hierarchy_role
        if role in (HierarchyRole.PMO, HierarchyRole.CEO):
            return stmt
        if role is HierarchyRole.ADVISOR:
            state = viewer.state_for(HierarchyRole.ADVISOR)
            if state is None:
                return stmt.where(false())
            return stmt.where(ScheduledVisitModel.state == state)
        return stmt.where(
            exists().where(
                VisitDeadlineLedgerModel.visit_id == ScheduledVisitModel.id,
                VisitDeadlineLedgerModel.assigned_identity == viewer.actor_id,
            )
        )
