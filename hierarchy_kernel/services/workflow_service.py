"""
hierarchy_kernel.services.workflow_service -- Workflow request state machine.

Responsibility:
    Owns the workflow-request aggregate: creation, approve (forward,
    terminal approval, fan-out to branch clones), reject (rollback),
    data submission (versioning) and administrative close.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/ and sibling
    infrastructure services.

Every operation has the same shape:

    1. Read a snapshot and validate (status, assignee, role).  No
       transaction is held after this step.
    2. Call collaborators (directory, template store) with bounded
       timeouts.
    3. Re-load inside one transaction, verify the revision is unchanged,
       mutate, commit.  Fan-out clones and the parent update share this
       transaction: all clones exist or none do.
    4. Emit events.

Invariants enforced:
    - Approved, Rejected and Closed requests accept no further
      approve / reject / submit (RequestClosedError, aggregate unchanged).
    - Only the current assignee may approve, reject or submit.
    - ``version`` grows by exactly 1 per submission, ``rollback_count`` by
      exactly 1 per reject, and never beyond ``max_rollback_count``.
    - On approve, an unresolvable (or timed-out) next assignee degrades to
      terminal approval.  On reject an unresolvable previous assignee is a
      hard failure.

Failure modes:
    - ValidationError subclasses on bad input or missing template.
    - AuthorizationError subclasses on role / assignee checks.
    - StateConflictError subclasses on terminal status, top-level reject,
      rollback ceiling, missing previous assignee, lost races.
    - DependencyUnavailableError when a required collaborator times out.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from hierarchy_kernel.domain.clock import Clock, ensure_utc
from hierarchy_kernel.domain.collaborators import EventKind, TemplateStore
from hierarchy_kernel.domain.hierarchy import (
    Actor,
    HierarchyRole,
    Scope,
    next_in_chain,
    previous_in_chain,
)
from hierarchy_kernel.domain.request import (
    DEFAULT_MAX_ROLLBACK_COUNT,
    INFO_NEED_MAX,
    INFO_NEED_MIN,
    TERMINAL_REQUEST_STATUSES,
    HistoryAction,
    RequestStatus,
    RequestTargets,
    WorkflowRequest,
    normalize_targets,
)
from hierarchy_kernel.domain.visit import TITLE_MAX, TITLE_MIN, validate_text
from hierarchy_kernel.exceptions import (
    CannotRejectAtTopLevelError,
    FieldValidationError,
    NoActiveTemplateError,
    NotCurrentAssigneeError,
    PreviousAssigneeNotFoundError,
    RequestClosedError,
    RequestNotFoundError,
    RollbackLimitReachedError,
    VisitNotFoundError,
)
from hierarchy_kernel.logging_config import LogContext, get_logger
from hierarchy_kernel.models.visit import ScheduledVisitModel
from hierarchy_kernel.models.workflow_request import (
    WorkflowRequestHistoryModel,
    WorkflowRequestModel,
    WorkflowRequestVersionModel,
)
from hierarchy_kernel.services.aggregate_locks import AggregateLockRegistry
from hierarchy_kernel.services.assignee_resolver import AssigneeResolver
from hierarchy_kernel.services.base import AggregateService
from hierarchy_kernel.services.collaborator_gateway import CollaboratorGateway
from hierarchy_kernel.services.event_emitter import EventEmitter

logger = get_logger("services.workflow")

REQUEST_CREATOR_ROLES = (HierarchyRole.PMO, HierarchyRole.CEO, HierarchyRole.ADVISOR)
CLOSE_OUTCOMES = frozenset({RequestStatus.CLOSED, RequestStatus.REJECTED})


@dataclass(frozen=True)
class _BranchClone:
    branch: str
    assignee: str | None


@dataclass
class _ApprovePlan:
    """What approve decided in the snapshot phase."""

    next_role: HierarchyRole | None
    assignee: str | None = None
    new_deadline: datetime | None = None
    clones: list[_BranchClone] = field(default_factory=list)

    @property
    def fan_out(self) -> bool:
        return bool(self.clones)


class WorkflowService(AggregateService):
    """Workflow request state machine."""

    ENTITY_TYPE = "WorkflowRequest"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        resolver: AssigneeResolver,
        emitter: EventEmitter,
        template_store: TemplateStore,
        gateway: CollaboratorGateway,
        locks: AggregateLockRegistry | None = None,
        clock: Clock | None = None,
        max_rollback_count: int = DEFAULT_MAX_ROLLBACK_COUNT,
        template_timeout_seconds: float = 2.0,
    ):
        super().__init__(session_factory, locks, clock)
        self._resolver = resolver
        self._emitter = emitter
        self._templates = template_store
        self._gateway = gateway
        self._max_rollback_count = max_rollback_count
        self._template_timeout = template_timeout_seconds

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create_request(
        self,
        title: str,
        info_need: str,
        timeline: datetime,
        targets: RequestTargets,
        actor: Actor,
        visit_id: UUID | None = None,
    ) -> WorkflowRequest:
        """
        Create a request and hand it to the next role down the chain.

        Preconditions:
            - ``actor`` holds PMO, CEO or Advisor.
            - ``timeline`` is in the future.
        Postconditions:
            - InProgress at the next role with its resolved holder, or Open
              at the creator's stage when nobody holds the next role.
            - version 1, rollback_count 0, one ``created`` history entry.
        Raises:
            NoHierarchyRoleError, RoleRequiredError, FieldValidationError,
            VisitNotFoundError, DependencyUnavailableError.
        """
        origin = self._hierarchy_role(actor)
        self._require_any_role(actor, REQUEST_CREATOR_ROLES, "create requests")
        title = validate_text("title", title, TITLE_MIN, TITLE_MAX)
        info_need = validate_text("info_need", info_need, INFO_NEED_MIN, INFO_NEED_MAX)
        targets = normalize_targets(targets.states, targets.branches, targets.verticals)
        timeline = ensure_utc(timeline)
        now = self._clock.now()
        if timeline <= now:
            raise FieldValidationError("timeline", "must be in the future")

        if visit_id is not None:
            with self._read() as session:
                if session.get(ScheduledVisitModel, visit_id) is None:
                    raise VisitNotFoundError(str(visit_id))

        next_role = next_in_chain(origin)
        assignee = None
        if next_role is not None:
            assignee = self._resolver.resolve(next_role, targets.scope)

        stage = next_role if assignee is not None else origin
        status = RequestStatus.IN_PROGRESS if assignee is not None else RequestStatus.OPEN
        request_id = uuid4()

        with LogContext.bind(request_id=request_id, actor_id=actor.actor_id):
            with self._write(request_id) as session:
                model = WorkflowRequestModel(
                    id=request_id,
                    title=title,
                    info_need=info_need,
                    timeline=timeline,
                    deadline=None,
                    targets=targets.to_dict(),
                    primary_state=targets.primary_state,
                    visit_id=visit_id,
                    parent_request_id=None,
                    fan_out_parent=False,
                    status=status.value,
                    current_stage=stage.value,
                    current_assignee=assignee,
                    created_by=actor.actor_id,
                    created_at=now,
                    updated_at=now,
                    version=1,
                    rollback_count=0,
                    max_rollback_count=self._max_rollback_count,
                )
                self._append_history(
                    model, HistoryAction.CREATED, actor, origin, now,
                    from_stage=None, to_stage=stage,
                    note=f"Workflow created by {origin.value}",
                )
                session.add(model)
                session.flush()
                dto = model.to_dto()

            logger.info(
                "request_created",
                extra={
                    "status": status.value,
                    "stage": stage.value,
                    "assignee_id": assignee,
                    "visit_id": visit_id,
                },
            )
            events: list[tuple[EventKind, dict[str, Any]]] = [(
                EventKind.REQUEST_CREATED,
                {
                    "request_id": request_id,
                    "created_by": actor.actor_id,
                    "stage": stage.value,
                    "status": status.value,
                    "visit_id": visit_id,
                },
            )]
            if assignee is not None:
                events.append(self._assigned_event(dto))
            self._emitter.emit_all(events)
        return dto

    # -------------------------------------------------------------------------
    # Approve
    # -------------------------------------------------------------------------

    def approve(
        self,
        request_id: UUID,
        actor: Actor,
        tightened_deadline: datetime | None = None,
        note: str = "",
        expected_revision: int | None = None,
    ) -> WorkflowRequest:
        """
        Approve at the current stage.

        An Advisor may pass ``tightened_deadline``; it is adopted only when
        earlier than the current effective deadline.  A YP approving a
        request that targets several branches forks it into one clone per
        branch, each at HOD; the parent stays InProgress with no assignee.

        Returns the (parent) request after the transition.
        """
        with LogContext.bind(request_id=request_id, actor_id=actor.actor_id):
            with self._lock(request_id):
                snapshot = self._snapshot(request_id)
                self._check_revision(request_id, expected_revision, snapshot.revision)
                self._ensure_open(snapshot)
                self._ensure_assignee(snapshot, actor)
                actor_role = self._hierarchy_role(actor)
                plan = self._plan_approve(snapshot, actor_role, tightened_deadline)
                result, clones = self._apply_approve(snapshot, actor, actor_role, plan, note)

            self._emit_approve_events(result, clones, actor, plan)
        return result

    def _plan_approve(
        self,
        snapshot: WorkflowRequest,
        actor_role: HierarchyRole,
        tightened_deadline: datetime | None,
    ) -> _ApprovePlan:
        new_deadline = None
        if actor_role is HierarchyRole.ADVISOR and tightened_deadline is not None:
            candidate = ensure_utc(tightened_deadline)
            if candidate < snapshot.effective_deadline:
                new_deadline = candidate

        next_role = next_in_chain(snapshot.current_stage)
        plan = _ApprovePlan(next_role=next_role, new_deadline=new_deadline)
        if next_role is None:
            return plan

        targets = snapshot.targets
        if actor_role is HierarchyRole.YP and len(targets.branches) > 1:
            for branch in targets.branches:
                scope = Scope(state=targets.primary_state, branch=branch)
                plan.clones.append(
                    _BranchClone(
                        branch=branch,
                        assignee=self._resolver.resolve_or_none(HierarchyRole.HOD, scope),
                    )
                )
            return plan

        plan.assignee = self._resolver.resolve_or_none(next_role, targets.scope)
        return plan

    def _apply_approve(
        self,
        snapshot: WorkflowRequest,
        actor: Actor,
        actor_role: HierarchyRole,
        plan: _ApprovePlan,
        note: str,
    ) -> tuple[WorkflowRequest, list[WorkflowRequest]]:
        request_id = snapshot.request_id
        with self._write(request_id) as session:
            model = self._load(session, request_id)
            self._check_revision(request_id, snapshot.revision, model.revision)
            now = self._clock.now()
            stage = HierarchyRole(model.current_stage)

            if plan.new_deadline is not None:
                previous = snapshot.effective_deadline
                model.deadline = plan.new_deadline
                self._append_history(
                    model, HistoryAction.DEADLINE_TIGHTENED, actor, actor_role, now,
                    from_stage=stage, to_stage=stage,
                    note=f"{previous.isoformat()} -> {plan.new_deadline.isoformat()}",
                )

            clone_models: list[WorkflowRequestModel] = []
            if plan.fan_out:
                for clone in plan.clones:
                    clone_models.append(
                        self._build_clone(model, clone, actor, actor_role, stage, now)
                    )
                model.current_assignee = None
                model.fan_out_parent = True
                to_stage: HierarchyRole | None = stage
                note = note or f"Forwarded to {len(plan.clones)} branches"
            elif plan.assignee is not None:
                model.current_stage = plan.next_role.value
                model.current_assignee = plan.assignee
                model.status = RequestStatus.IN_PROGRESS.value
                to_stage = plan.next_role
            else:
                model.status = RequestStatus.APPROVED.value
                model.current_assignee = None
                to_stage = None

            model.updated_at = now
            self._append_history(
                model, HistoryAction.APPROVED, actor, actor_role, now,
                from_stage=stage, to_stage=to_stage, note=note,
            )
            session.add_all(clone_models)
            session.flush()
            result = model.to_dto()
            clones = [c.to_dto() for c in clone_models]

        logger.info(
            "request_approved",
            extra={
                "from_stage": stage.value,
                "to_stage": to_stage.value if to_stage else None,
                "status": result.status.value,
                "deadline_tightened": plan.new_deadline is not None,
            },
        )
        if clones:
            logger.info(
                "request_fanned_out",
                extra={
                    "branches": [c.branch for c in plan.clones],
                    "clone_ids": [c.request_id for c in clones],
                    "unassigned_branches": [
                        c.branch for c in plan.clones if c.assignee is None
                    ],
                },
            )
        return result, clones

    def _build_clone(
        self,
        parent: WorkflowRequestModel,
        clone: _BranchClone,
        actor: Actor,
        actor_role: HierarchyRole,
        from_stage: HierarchyRole,
        now: datetime,
    ) -> WorkflowRequestModel:
        targets = RequestTargets.from_dict(parent.targets).for_branch(clone.branch)
        status = RequestStatus.IN_PROGRESS if clone.assignee else RequestStatus.OPEN
        model = WorkflowRequestModel(
            id=uuid4(),
            title=parent.title,
            info_need=parent.info_need,
            timeline=parent.timeline,
            deadline=parent.deadline,
            targets=targets.to_dict(),
            primary_state=targets.primary_state,
            visit_id=parent.visit_id,
            parent_request_id=parent.id,
            fan_out_parent=False,
            status=status.value,
            current_stage=HierarchyRole.HOD.value,
            current_assignee=clone.assignee,
            created_by=parent.created_by,
            created_at=now,
            updated_at=now,
            version=1,
            rollback_count=0,
            max_rollback_count=parent.max_rollback_count,
        )
        self._append_history(
            model, HistoryAction.FORWARDED, actor, actor_role, now,
            from_stage=from_stage, to_stage=HierarchyRole.HOD, note=clone.branch,
        )
        return model

    def _emit_approve_events(
        self,
        result: WorkflowRequest,
        clones: list[WorkflowRequest],
        actor: Actor,
        plan: _ApprovePlan,
    ) -> None:
        events: list[tuple[EventKind, dict[str, Any]]] = []
        if plan.fan_out:
            for clone in clones:
                events.append((
                    EventKind.REQUEST_FORWARDED,
                    {
                        "request_id": clone.request_id,
                        "parent_request_id": result.request_id,
                        "branch": clone.targets.primary_branch,
                        "stage": clone.current_stage.value,
                        "actor_id": actor.actor_id,
                    },
                ))
                if clone.current_assignee is not None:
                    events.append(self._assigned_event(clone))
        elif result.status is RequestStatus.APPROVED:
            events.append((
                EventKind.REQUEST_APPROVED,
                {"request_id": result.request_id, "actor_id": actor.actor_id},
            ))
        else:
            events.append((
                EventKind.REQUEST_FORWARDED,
                {
                    "request_id": result.request_id,
                    "stage": result.current_stage.value,
                    "actor_id": actor.actor_id,
                },
            ))
            events.append(self._assigned_event(result))
        self._emitter.emit_all(events)

    # -------------------------------------------------------------------------
    # Reject
    # -------------------------------------------------------------------------

    def reject(
        self,
        request_id: UUID,
        actor: Actor,
        note: str = "",
        expected_revision: int | None = None,
    ) -> WorkflowRequest:
        """
        Send the request back one stage up the chain.

        Raises:
            RequestClosedError, NotCurrentAssigneeError,
            CannotRejectAtTopLevelError, RollbackLimitReachedError,
            PreviousAssigneeNotFoundError, DependencyUnavailableError.
        """
        with LogContext.bind(request_id=request_id, actor_id=actor.actor_id):
            with self._lock(request_id):
                snapshot = self._snapshot(request_id)
                self._check_revision(request_id, expected_revision, snapshot.revision)
                self._ensure_open(snapshot)
                self._ensure_assignee(snapshot, actor)
                actor_role = self._hierarchy_role(actor)

                prev_role = previous_in_chain(snapshot.current_stage)
                if prev_role is None:
                    raise CannotRejectAtTopLevelError(
                        str(request_id), snapshot.current_stage.value,
                    )
                if snapshot.rollback_count >= snapshot.max_rollback_count:
                    raise RollbackLimitReachedError(
                        str(request_id), snapshot.rollback_count,
                        snapshot.max_rollback_count,
                    )
                assignee = self._resolver.resolve(prev_role, snapshot.targets.scope)
                if assignee is None:
                    raise PreviousAssigneeNotFoundError(str(request_id), prev_role.value)

                with self._write(request_id) as session:
                    model = self._load(session, request_id)
                    self._check_revision(request_id, snapshot.revision, model.revision)
                    now = self._clock.now()
                    model.current_stage = prev_role.value
                    model.current_assignee = assignee
                    model.rollback_count = model.rollback_count + 1
                    model.status = RequestStatus.IN_PROGRESS.value
                    model.updated_at = now
                    self._append_history(
                        model, HistoryAction.REJECTED, actor, actor_role, now,
                        from_stage=snapshot.current_stage, to_stage=prev_role, note=note,
                    )
                    session.flush()
                    result = model.to_dto()

            logger.info(
                "request_rejected",
                extra={
                    "from_stage": snapshot.current_stage.value,
                    "to_stage": prev_role.value,
                    "rollback_count": result.rollback_count,
                },
            )
            self._emitter.emit_all([
                (
                    EventKind.REQUEST_REJECTED,
                    {
                        "request_id": request_id,
                        "actor_id": actor.actor_id,
                        "from_stage": snapshot.current_stage.value,
                        "to_stage": prev_role.value,
                        "rollback_count": result.rollback_count,
                    },
                ),
                self._assigned_event(result),
            ])
        return result

    # -------------------------------------------------------------------------
    # Submit
    # -------------------------------------------------------------------------

    def submit(
        self,
        request_id: UUID,
        actor: Actor,
        payload: Any,
        note: str = "",
        expected_revision: int | None = None,
    ) -> WorkflowRequest:
        """
        Attach a new data version.  Stage and assignee do not change.

        Only a DivisionYP current assignee may submit, and only when the
        template store has an active template for the first target state
        and vertical.
        """
        with LogContext.bind(request_id=request_id, actor_id=actor.actor_id):
            with self._lock(request_id):
                snapshot = self._snapshot(request_id)
                self._check_revision(request_id, expected_revision, snapshot.revision)
                self._ensure_open(snapshot)
                self._ensure_assignee(snapshot, actor)
                self._require_any_role(actor, (HierarchyRole.DIVISION_YP,), "submit data")
                actor_role = self._hierarchy_role(actor)
                if payload is None:
                    raise FieldValidationError("payload", "submission data is required")
                try:
                    json.dumps(payload)
                except (TypeError, ValueError) as exc:
                    raise FieldValidationError(
                        "payload", "must be JSON-serializable",
                    ) from exc

                state = snapshot.targets.primary_state
                vertical = snapshot.targets.primary_vertical
                has_template = self._gateway.call(
                    "template_store", "has_active_template",
                    self._templates.has_active_template, state, vertical,
                    timeout=self._template_timeout,
                )
                if not has_template:
                    raise NoActiveTemplateError(state, vertical)

                with self._write(request_id) as session:
                    model = self._load(session, request_id)
                    self._check_revision(request_id, snapshot.revision, model.revision)
                    now = self._clock.now()
                    new_version = model.version + 1
                    model.versions.append(
                        WorkflowRequestVersionModel(
                            version=new_version,
                            payload=payload,
                            submitted_by=actor.actor_id,
                            submitted_at=now,
                            note=note or "Submission",
                        )
                    )
                    model.version = new_version
                    model.updated_at = now
                    stage = HierarchyRole(model.current_stage)
                    self._append_history(
                        model, HistoryAction.SUBMITTED, actor, actor_role, now,
                        from_stage=stage, to_stage=stage, note=note,
                    )
                    session.flush()
                    result = model.to_dto()

            logger.info("request_submitted", extra={"version": result.version})
            self._emitter.emit(
                EventKind.REQUEST_SUBMITTED,
                {
                    "request_id": request_id,
                    "version": result.version,
                    "submitted_by": actor.actor_id,
                },
            )
        return result

    # -------------------------------------------------------------------------
    # Close
    # -------------------------------------------------------------------------

    def close_request(
        self,
        request_id: UUID,
        actor: Actor,
        outcome: RequestStatus = RequestStatus.CLOSED,
        note: str = "",
        expected_revision: int | None = None,
    ) -> WorkflowRequest:
        """
        Administratively end a non-terminal request as Closed or Rejected.

        Allowed for PMO actors and for the request's creator.
        """
        outcome = RequestStatus(outcome)
        if outcome not in CLOSE_OUTCOMES:
            raise FieldValidationError("outcome", "must be closed or rejected")
        actor_role = self._hierarchy_role(actor)

        with LogContext.bind(request_id=request_id, actor_id=actor.actor_id):
            with self._lock(request_id), self._write(request_id) as session:
                model = self._load(session, request_id)
                self._check_revision(request_id, expected_revision, model.revision)
                if RequestStatus(model.status) in TERMINAL_REQUEST_STATUSES:
                    raise RequestClosedError(str(request_id), model.status)
                if actor.actor_id != model.created_by:
                    self._require_any_role(actor, (HierarchyRole.PMO,), "close requests")
                now = self._clock.now()
                stage = HierarchyRole(model.current_stage)
                model.status = outcome.value
                model.current_assignee = None
                model.updated_at = now
                self._append_history(
                    model, HistoryAction.CLOSED, actor, actor_role, now,
                    from_stage=stage, to_stage=None,
                    note=note or f"Closed as {outcome.value}",
                )
                session.flush()
                result = model.to_dto()

            logger.info("request_closed", extra={"outcome": outcome.value})
            self._emitter.emit(
                EventKind.REQUEST_CLOSED,
                {
                    "request_id": request_id,
                    "outcome": outcome.value,
                    "actor_id": actor.actor_id,
                },
            )
        return result

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _snapshot(self, request_id: UUID) -> WorkflowRequest:
        with self._read() as session:
            return self._load(session, request_id).to_dto()

    def _load(self, session: Session, request_id: UUID) -> WorkflowRequestModel:
        model = session.get(WorkflowRequestModel, request_id)
        if model is None:
            raise RequestNotFoundError(str(request_id))
        return model

    @staticmethod
    def _ensure_open(snapshot: WorkflowRequest) -> None:
        if snapshot.status in TERMINAL_REQUEST_STATUSES:
            raise RequestClosedError(str(snapshot.request_id), snapshot.status.value)

    @staticmethod
    def _ensure_assignee(snapshot: WorkflowRequest, actor: Actor) -> None:
        if snapshot.current_assignee is None or snapshot.current_assignee != actor.actor_id:
            raise NotCurrentAssigneeError(
                str(snapshot.request_id), actor.actor_id, snapshot.current_assignee,
            )

    @staticmethod
    def _assigned_event(request: WorkflowRequest) -> tuple[EventKind, dict[str, Any]]:
        return (
            EventKind.REQUEST_ASSIGNED,
            {
                "request_id": request.request_id,
                "assignee_id": request.current_assignee,
                "stage": request.current_stage.value,
                "due_at": request.effective_deadline,
            },
        )

    @staticmethod
    def _append_history(
        model: WorkflowRequestModel,
        action: HistoryAction,
        actor: Actor,
        actor_role: HierarchyRole,
        at: datetime,
        from_stage: HierarchyRole | None,
        to_stage: HierarchyRole | None,
        note: str = "",
    ) -> None:
        model.history.append(
            WorkflowRequestHistoryModel(
                seq=model.next_history_seq(),
                action=action.value,
                actor_id=actor.actor_id,
                actor_role=actor_role.value,
                at=at,
                from_stage=from_stage.value if from_stage else None,
                to_stage=to_stage.value if to_stage else None,
                note=note,
            )
        )
