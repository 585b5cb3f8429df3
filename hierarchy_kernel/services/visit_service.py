"""
hierarchy_kernel.services.visit_service -- Scheduled visit lifecycle.

Responsibility:
    Owns the scheduled-visit aggregate: creation with the deadline cascade
    and per-role assignees, activation, completion, cancellation, ledger
    entry completion and the overdue sweep.  Every change appends to the
    visit's audit trail and emits an event after commit.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/ and sibling
    infrastructure services.

Invariants enforced:
    - The ledger is computed once, at creation, and never recomputed.
    - Status changes follow VISIT_TRANSITIONS; Completed and Cancelled are
      terminal.
    - Only PMO creates, activates and completes visits.
    - Validation and authorization run before any directory call, and
      directory calls run before the write transaction opens.

Failure modes:
    - FieldValidationError / InvalidDeadlineOrderingError /
      UnknownVerticalError on bad input.
    - RoleRequiredError / NoHierarchyRoleError on insufficient role.
    - VisitNotFoundError, LedgerEntryNotFoundError.
    - InvalidTransitionError on an illegal status change.
    - ConcurrentModificationError on a lost race.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from hierarchy_kernel.domain.cascade import compute_cascade
from hierarchy_kernel.domain.clock import Clock, ensure_utc
from hierarchy_kernel.domain.collaborators import EventKind
from hierarchy_kernel.domain.hierarchy import Actor, HierarchyRole, Scope
from hierarchy_kernel.domain.visit import (
    PURPOSE_MAX,
    PURPOSE_MIN,
    TITLE_MAX,
    TITLE_MIN,
    VISIT_TRANSITIONS,
    LedgerEntryStatus,
    ScheduledVisit,
    VisitAction,
    VisitStatus,
    normalize_verticals,
    validate_text,
)
from hierarchy_kernel.exceptions import (
    DependencyUnavailableError,
    FieldValidationError,
    InvalidDeadlineOrderingError,
    InvalidTransitionError,
    LedgerEntryNotFoundError,
    RoleRequiredError,
    UnknownVerticalError,
    VisitNotFoundError,
)
from hierarchy_kernel.logging_config import LogContext, get_logger
from hierarchy_kernel.models.visit import (
    ScheduledVisitModel,
    VisitAuditEntryModel,
    VisitDeadlineLedgerModel,
)
from hierarchy_kernel.models.workflow_request import WorkflowRequestModel
from hierarchy_kernel.services.aggregate_locks import AggregateLockRegistry
from hierarchy_kernel.services.assignee_resolver import AssigneeResolver
from hierarchy_kernel.services.base import AggregateService
from hierarchy_kernel.services.event_emitter import EventEmitter

logger = get_logger("services.visit")

_OPEN_STATUSES = (VisitStatus.DRAFT.value, VisitStatus.ACTIVE.value)


class VisitService(AggregateService):
    """Scheduled visit lifecycle controller."""

    ENTITY_TYPE = "ScheduledVisit"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        resolver: AssigneeResolver,
        emitter: EventEmitter,
        locks: AggregateLockRegistry | None = None,
        clock: Clock | None = None,
        vertical_catalog: Mapping[str, frozenset[str]] | None = None,
    ):
        super().__init__(session_factory, locks, clock)
        self._resolver = resolver
        self._emitter = emitter
        self._vertical_catalog = vertical_catalog

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_visit(
        self,
        title: str,
        purpose: str,
        visit_date: datetime,
        state: str,
        verticals,
        final_deadline: datetime,
        actor: Actor,
    ) -> ScheduledVisit:
        """
        Create a Draft visit with its deadline ledger.

        Preconditions:
            - ``actor`` holds PMO.
            - ``final_deadline < visit_date``.
        Postconditions:
            - One ledger entry per role, DivisionYP (earliest) to PMO.
            - Roles nobody holds are left unassigned.
            - Audit trail starts with a ``created`` entry.
        Raises:
            RoleRequiredError, FieldValidationError,
            InvalidDeadlineOrderingError, UnknownVerticalError.
        """
        self._require_any_role(actor, (HierarchyRole.PMO,), "create visits")
        title = validate_text("title", title, TITLE_MIN, TITLE_MAX)
        purpose = validate_text("purpose", purpose, PURPOSE_MIN, PURPOSE_MAX)
        state = (state or "").strip()
        if not state:
            raise FieldValidationError("state", "is required")
        verticals = normalize_verticals(verticals)
        self._check_catalog(state, verticals)

        visit_date = ensure_utc(visit_date)
        final_deadline = ensure_utc(final_deadline)
        if not final_deadline < visit_date:
            raise InvalidDeadlineOrderingError(
                visit_date.isoformat(), final_deadline.isoformat(),
            )

        cascade = compute_cascade(visit_date, final_deadline)
        scope = Scope(state=state)
        assignees = {d.role: self._ledger_assignee(d.role, scope) for d in cascade}

        visit_id = uuid4()
        now = self._clock.now()
        actor_role = self._hierarchy_role(actor)

        with LogContext.bind(visit_id=visit_id, actor_id=actor.actor_id):
            with self._write(visit_id) as session:
                model = ScheduledVisitModel(
                    id=visit_id,
                    title=title,
                    purpose=purpose,
                    visit_date=visit_date,
                    final_deadline=final_deadline,
                    state=state,
                    verticals=list(verticals),
                    status=VisitStatus.DRAFT.value,
                    created_by=actor.actor_id,
                    created_at=now,
                    updated_at=now,
                )
                for seq, deadline in enumerate(cascade, start=1):
                    model.ledger.append(
                        VisitDeadlineLedgerModel(
                            seq=seq,
                            role=deadline.role.value,
                            due_at=deadline.due_at,
                            assigned_identity=assignees[deadline.role],
                            entry_status=LedgerEntryStatus.PENDING.value,
                        )
                    )
                self._append_audit(
                    model, VisitAction.CREATED, actor.actor_id, actor_role.value, now,
                    note=f"Visit created for {state}",
                )
                session.add(model)
                session.flush()
                dto = model.to_dto()

            logger.info(
                "visit_created",
                extra={
                    "state": state,
                    "visit_date": visit_date,
                    "final_deadline": final_deadline,
                    "unassigned_roles": [r.value for r in dto.unassigned_roles],
                },
            )
            self._emitter.emit(
                EventKind.VISIT_CREATED,
                {
                    "visit_id": visit_id,
                    "state": state,
                    "visit_date": visit_date,
                    "final_deadline": final_deadline,
                    "created_by": actor.actor_id,
                    "unassigned_roles": [r.value for r in dto.unassigned_roles],
                },
            )
        return dto

    def _ledger_assignee(self, role: HierarchyRole, scope: Scope) -> str | None:
        # Roles nobody holds skip the scoped lookup entirely.
        try:
            if not self._resolver.identities_with_role(role):
                return None
        except DependencyUnavailableError:
            pass
        return self._resolver.resolve_or_none(role, scope)

    def _check_catalog(self, state: str, verticals: tuple[str, ...]) -> None:
        if self._vertical_catalog is None:
            return
        allowed = self._vertical_catalog.get(state, frozenset())
        for vertical in verticals:
            if vertical not in allowed:
                raise UnknownVerticalError(state, vertical)

    # -------------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------------

    def activate(
        self, visit_id: UUID, actor: Actor, expected_revision: int | None = None,
    ) -> ScheduledVisit:
        """Draft -> Active. PMO only."""
        self._require_any_role(actor, (HierarchyRole.PMO,), "activate visits")
        return self._transition(
            visit_id, actor, VisitStatus.ACTIVE, VisitAction.ACTIVATED,
            EventKind.VISIT_ACTIVATED, expected_revision,
        )

    def complete(
        self, visit_id: UUID, actor: Actor, expected_revision: int | None = None,
    ) -> ScheduledVisit:
        """Active -> Completed. PMO only."""
        self._require_any_role(actor, (HierarchyRole.PMO,), "complete visits")
        return self._transition(
            visit_id, actor, VisitStatus.COMPLETED, VisitAction.COMPLETED,
            EventKind.VISIT_COMPLETED, expected_revision,
        )

    def cancel(
        self, visit_id: UUID, actor: Actor, expected_revision: int | None = None,
    ) -> ScheduledVisit:
        """Draft|Active -> Cancelled. Never from Completed."""
        self._hierarchy_role(actor)
        return self._transition(
            visit_id, actor, VisitStatus.CANCELLED, VisitAction.CANCELLED,
            EventKind.VISIT_CANCELLED, expected_revision,
        )

    def _transition(
        self,
        visit_id: UUID,
        actor: Actor,
        target: VisitStatus,
        action: VisitAction,
        event_kind: EventKind,
        expected_revision: int | None,
    ) -> ScheduledVisit:
        actor_role = self._hierarchy_role(actor)
        with LogContext.bind(visit_id=visit_id, actor_id=actor.actor_id):
            with self._lock(visit_id), self._write(visit_id) as session:
                model = self._load(session, visit_id)
                self._check_revision(visit_id, expected_revision, model.revision)
                current = VisitStatus(model.status)
                if target not in VISIT_TRANSITIONS[current]:
                    raise InvalidTransitionError(
                        str(visit_id), current.value, action.value,
                    )
                now = self._clock.now()
                model.status = target.value
                model.updated_at = now
                self._append_audit(
                    model, action, actor.actor_id, actor_role.value, now,
                    note=f"Visit {action.value} for {model.state}",
                )
                session.flush()
                dto = model.to_dto(self._request_ids(session, visit_id))

            logger.info(
                "visit_status_changed",
                extra={"from_status": current.value, "to_status": target.value},
            )
            self._emitter.emit(
                event_kind,
                {
                    "visit_id": visit_id,
                    "from_status": current.value,
                    "to_status": target.value,
                    "actor_id": actor.actor_id,
                },
            )
        return dto

    # -------------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------------

    def complete_deadline(
        self,
        visit_id: UUID,
        role: HierarchyRole,
        actor: Actor,
        expected_revision: int | None = None,
    ) -> ScheduledVisit:
        """
        Mark one ledger entry Completed.

        Allowed for the entry's assigned identity or any PMO actor, on Draft
        or Active visits.  Overdue entries may still be completed.
        """
        actor_role = self._hierarchy_role(actor)
        with LogContext.bind(visit_id=visit_id, actor_id=actor.actor_id):
            with self._lock(visit_id), self._write(visit_id) as session:
                model = self._load(session, visit_id)
                self._check_revision(visit_id, expected_revision, model.revision)
                row = model.ledger_row(role.value)
                if row is None:
                    raise LedgerEntryNotFoundError(str(visit_id), role.value)
                if row.assigned_identity != actor.actor_id and not actor.holds(HierarchyRole.PMO):
                    raise RoleRequiredError(
                        actor.actor_id, (HierarchyRole.PMO.value,),
                        f"complete the {role.value} deadline",
                    )
                if model.status not in _OPEN_STATUSES:
                    raise InvalidTransitionError(
                        str(visit_id), model.status, "complete_deadline",
                        reason="visit is closed",
                    )
                if row.entry_status == LedgerEntryStatus.COMPLETED.value:
                    raise InvalidTransitionError(
                        str(visit_id), row.entry_status, "complete_deadline",
                        reason=f"{role.value} deadline already completed",
                    )
                now = self._clock.now()
                row.entry_status = LedgerEntryStatus.COMPLETED.value
                row.completed_at = now
                model.updated_at = now
                self._append_audit(
                    model, VisitAction.DEADLINE_COMPLETED, actor.actor_id,
                    actor_role.value, now, note=role.value,
                )
                session.flush()
                dto = model.to_dto(self._request_ids(session, visit_id))

            logger.info("deadline_completed", extra={"role": role.value})
            self._emitter.emit(
                EventKind.DEADLINE_COMPLETED,
                {
                    "visit_id": visit_id,
                    "role": role.value,
                    "completed_by": actor.actor_id,
                    "completed_at": now,
                },
            )
        return dto

    def mark_overdue_deadlines(self, as_of: datetime | None = None) -> int:
        """
        Flip Pending entries due before ``as_of`` to Overdue.

        Only Draft and Active visits are swept.  One ``deadline_overdue``
        event is emitted per flipped entry.  Returns the number flipped.
        """
        as_of = ensure_utc(as_of) if as_of is not None else self._clock.now()
        with self._read() as session:
            visit_ids = list(session.execute(
                select(VisitDeadlineLedgerModel.visit_id)
                .join(ScheduledVisitModel, ScheduledVisitModel.id == VisitDeadlineLedgerModel.visit_id)
                .where(
                    VisitDeadlineLedgerModel.entry_status == LedgerEntryStatus.PENDING.value,
                    VisitDeadlineLedgerModel.due_at < as_of,
                    ScheduledVisitModel.status.in_(_OPEN_STATUSES),
                )
                .distinct()
            ).scalars())

        flipped = 0
        for visit_id in visit_ids:
            flipped += self._mark_visit_overdue(visit_id, as_of)

        logger.info(
            "overdue_sweep_completed",
            extra={"as_of": as_of, "visits": len(visit_ids), "entries": flipped},
        )
        return flipped

    def _mark_visit_overdue(self, visit_id: UUID, as_of: datetime) -> int:
        events: list[tuple[EventKind, dict[str, Any]]] = []
        with LogContext.bind(visit_id=visit_id):
            with self._lock(visit_id), self._write(visit_id) as session:
                model = self._load(session, visit_id)
                if model.status not in _OPEN_STATUSES:
                    return 0
                now = self._clock.now()
                for row in model.ledger:
                    if (
                        row.entry_status == LedgerEntryStatus.PENDING.value
                        and row.due_at < as_of
                    ):
                        row.entry_status = LedgerEntryStatus.OVERDUE.value
                        self._append_audit(
                            model, VisitAction.DEADLINE_OVERDUE, "system", "system",
                            now, note=row.role,
                        )
                        events.append((
                            EventKind.DEADLINE_OVERDUE,
                            {
                                "visit_id": visit_id,
                                "role": row.role,
                                "due_at": row.due_at,
                                "assigned_identity": row.assigned_identity,
                            },
                        ))
                if events:
                    model.updated_at = now

            self._emitter.emit_all(events)
        return len(events)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _load(self, session: Session, visit_id: UUID) -> ScheduledVisitModel:
        model = session.get(ScheduledVisitModel, visit_id)
        if model is None:
            raise VisitNotFoundError(str(visit_id))
        return model

    @staticmethod
    def _request_ids(session: Session, visit_id: UUID) -> tuple[UUID, ...]:
        return tuple(session.execute(
            select(WorkflowRequestModel.id)
            .where(WorkflowRequestModel.visit_id == visit_id)
            .order_by(WorkflowRequestModel.created_at, WorkflowRequestModel.id)
        ).scalars())

    @staticmethod
    def _append_audit(
        model: ScheduledVisitModel,
        action: VisitAction,
        actor_id: str,
        actor_role: str,
        at: datetime,
        note: str = "",
    ) -> None:
        model.audit_entries.append(
            VisitAuditEntryModel(
                seq=model.next_audit_seq(),
                action=action.value,
                actor_id=actor_id,
                actor_role=actor_role,
                at=at,
                note=note,
            )
        )
