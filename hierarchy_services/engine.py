"""
hierarchy_services.engine -- HierarchyWorkflowEngine facade.

Responsibility:
    Builds every kernel service exactly once from ``EngineSettings`` and the
    injected collaborators, and exposes the engine's public operations:
    visit lifecycle, deadline ledger, workflow requests, read queries and
    batch dispatch.  Any transport layer wraps this class.

Architecture position:
    Services -- outer layer.  The only place where ``hierarchy_config``
    values reach kernel constructors.

        hierarchy_services -> hierarchy_config  (allowed)
        hierarchy_services -> hierarchy_kernel  (allowed)
        hierarchy_kernel   -> hierarchy_config  (FORBIDDEN)

Invariants enforced:
    - Single-instance lifecycle: one gateway, lock registry, resolver,
      emitter and one of each aggregate service per engine.
    - Collaborators are injected; there is no process-wide registry.
    - Reads use a fresh session per call and never hold locks.

Usage:
    engine = HierarchyWorkflowEngine(
        session_factory=get_session_factory(),
        directory=directory,
        template_store=templates,
        event_sink=sink,
    )
    visit = engine.create_visit(...)
    request = engine.create_request(...)
    engine.approve(request.request_id, actor)
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from hierarchy_config import EngineSettings, get_engine_settings
from hierarchy_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from hierarchy_kernel.domain.clock import Clock, SystemClock, ensure_utc
from hierarchy_kernel.domain.collaborators import DirectoryLookup, EventSink, TemplateStore
from hierarchy_kernel.domain.hierarchy import Actor, HierarchyRole
from hierarchy_kernel.domain.request import (
    DeadlineAlertSummary,
    RequestFilter,
    RequestStatus,
    RequestTargets,
    WorkflowRequest,
)
from hierarchy_kernel.domain.visit import ScheduledVisit, VisitFilter, VisitStatus
from hierarchy_kernel.logging_config import get_logger
from hierarchy_kernel.selectors.request_selector import RequestSelector
from hierarchy_kernel.selectors.visit_selector import VisitSelector
from hierarchy_kernel.services.aggregate_locks import AggregateLockRegistry
from hierarchy_kernel.services.assignee_resolver import AssigneeResolver
from hierarchy_kernel.services.collaborator_gateway import CollaboratorGateway
from hierarchy_kernel.services.event_emitter import EventEmitter
from hierarchy_kernel.services.visit_service import VisitService
from hierarchy_kernel.services.workflow_service import WorkflowService
from hierarchy_services.dispatcher import DispatchOutcome, ParallelDispatcher

logger = get_logger("services.engine")


class HierarchyWorkflowEngine:
    """Central factory and facade for the workflow engine.

    Contract:
        Receives a session factory, the three external collaborators and
        optional settings/clock.  Constructs every kernel service once, in
        dependency order, and exposes them as public attributes as well as
        through the facade methods.

    Non-goals:
        - Does NOT own the database engine lifecycle (see ``from_url``).
        - Does NOT retry failed operations.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        directory: DirectoryLookup,
        template_store: TemplateStore,
        event_sink: EventSink,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings if settings is not None else get_engine_settings()
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

        # --- Infrastructure, shared by both aggregate services ---
        self.gateway = CollaboratorGateway(
            max_concurrency=self.settings.collaborator_max_concurrency,
            default_timeout=self.settings.directory_timeout_seconds,
        )
        self.locks = AggregateLockRegistry(
            lock_timeout_seconds=self.settings.lock_timeout_seconds,
        )
        self.resolver = AssigneeResolver(
            directory, self.gateway,
            timeout_seconds=self.settings.directory_timeout_seconds,
        )
        self.emitter = EventEmitter(
            event_sink, self.gateway, clock=self._clock,
            timeout_seconds=self.settings.event_timeout_seconds,
        )

        # --- Aggregate services ---
        catalog = None
        if self.settings.enforce_state_verticals:
            catalog = self.settings.state_verticals.as_mapping()
        self.visits = VisitService(
            session_factory, self.resolver, self.emitter,
            locks=self.locks, clock=self._clock, vertical_catalog=catalog,
        )
        self.workflows = WorkflowService(
            session_factory, self.resolver, self.emitter, template_store,
            self.gateway, locks=self.locks, clock=self._clock,
            max_rollback_count=self.settings.max_rollback_count,
            template_timeout_seconds=self.settings.template_timeout_seconds,
        )
        self.dispatcher = ParallelDispatcher(self.settings.worker_pool_size)

        logger.info(
            "engine_started",
            extra={
                "worker_pool_size": self.settings.worker_pool_size,
                "collaborator_max_concurrency": self.settings.collaborator_max_concurrency,
                "enforce_state_verticals": self.settings.enforce_state_verticals,
            },
        )

    @classmethod
    def from_url(
        cls,
        database_url: str,
        directory: DirectoryLookup,
        template_store: TemplateStore,
        event_sink: EventSink,
        settings: EngineSettings | None = None,
        clock: Clock | None = None,
    ) -> HierarchyWorkflowEngine:
        """Initialize the module engine for ``database_url``, create tables, build."""
        init_engine_from_url(database_url)
        create_tables()
        return cls(
            get_session_factory(), directory, template_store, event_sink,
            settings=settings, clock=clock,
        )

    @contextmanager
    def _reader(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Visits
    # -------------------------------------------------------------------------

    def create_visit(
        self,
        title: str,
        purpose: str,
        visit_date: datetime,
        state: str,
        verticals: Sequence[str],
        final_deadline: datetime,
        actor: Actor,
    ) -> ScheduledVisit:
        return self.visits.create_visit(
            title, purpose, visit_date, state, verticals, final_deadline, actor,
        )

    def activate(
        self, visit_id: UUID, actor: Actor, expected_revision: int | None = None,
    ) -> ScheduledVisit:
        return self.visits.activate(visit_id, actor, expected_revision)

    def complete(
        self, visit_id: UUID, actor: Actor, expected_revision: int | None = None,
    ) -> ScheduledVisit:
        return self.visits.complete(visit_id, actor, expected_revision)

    def cancel(
        self, visit_id: UUID, actor: Actor, expected_revision: int | None = None,
    ) -> ScheduledVisit:
        return self.visits.cancel(visit_id, actor, expected_revision)

    def get_visit(self, visit_id: UUID) -> ScheduledVisit:
        with self._reader() as session:
            return VisitSelector(session).get(visit_id)

    def list_visits(
        self,
        status: VisitStatus | str | None = None,
        state: str | None = None,
        viewer: Actor | None = None,
        limit: int = 50,
    ) -> list[ScheduledVisit]:
        visit_filter = VisitFilter(
            status=VisitStatus(status) if status is not None else None,
            state=state,
            limit=limit,
        )
        with self._reader() as session:
            return VisitSelector(session).list_visits(visit_filter, viewer=viewer)

    # -------------------------------------------------------------------------
    # Deadline ledger
    # -------------------------------------------------------------------------

    def complete_deadline(
        self,
        visit_id: UUID,
        role: HierarchyRole,
        actor: Actor,
        expected_revision: int | None = None,
    ) -> ScheduledVisit:
        return self.visits.complete_deadline(
            visit_id, HierarchyRole(role), actor, expected_revision,
        )

    def mark_overdue_deadlines(self, as_of: datetime | None = None) -> int:
        return self.visits.mark_overdue_deadlines(as_of)

    def deadline_alerts(self, as_of: datetime | None = None) -> DeadlineAlertSummary:
        as_of = ensure_utc(as_of) if as_of is not None else self._clock.now()
        window = timedelta(hours=self.settings.upcoming_window_hours)
        with self._reader() as session:
            return RequestSelector(session).deadline_alerts(as_of, window)

    # -------------------------------------------------------------------------
    # Workflow requests
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
        return self.workflows.create_request(
            title, info_need, timeline, targets, actor, visit_id=visit_id,
        )

    def approve(
        self,
        request_id: UUID,
        actor: Actor,
        tightened_deadline: datetime | None = None,
        note: str = "",
        expected_revision: int | None = None,
    ) -> WorkflowRequest:
        return self.workflows.approve(
            request_id, actor, tightened_deadline=tightened_deadline,
            note=note, expected_revision=expected_revision,
        )

    def reject(
        self,
        request_id: UUID,
        actor: Actor,
        note: str = "",
        expected_revision: int | None = None,
    ) -> WorkflowRequest:
        return self.workflows.reject(
            request_id, actor, note=note, expected_revision=expected_revision,
        )

    def submit(
        self,
        request_id: UUID,
        actor: Actor,
        payload: Any,
        note: str = "",
        expected_revision: int | None = None,
    ) -> WorkflowRequest:
        return self.workflows.submit(
            request_id, actor, payload, note=note, expected_revision=expected_revision,
        )

    def close_request(
        self,
        request_id: UUID,
        actor: Actor,
        outcome: RequestStatus = RequestStatus.CLOSED,
        note: str = "",
        expected_revision: int | None = None,
    ) -> WorkflowRequest:
        return self.workflows.close_request(
            request_id, actor, outcome=outcome, note=note,
            expected_revision=expected_revision,
        )

    def get_request(self, request_id: UUID) -> WorkflowRequest:
        with self._reader() as session:
            return RequestSelector(session).get(request_id)

    def list_requests(
        self,
        status: RequestStatus | str | None = None,
        scope_state: str | None = None,
        assignee_id: str | None = None,
        visit_id: UUID | None = None,
        parent_request_id: UUID | None = None,
        viewer: Actor | None = None,
        limit: int = 50,
    ) -> list[WorkflowRequest]:
        request_filter = RequestFilter(
            status=RequestStatus(status) if status is not None else None,
            scope_state=scope_state,
            assignee_id=assignee_id,
            visit_id=visit_id,
            parent_request_id=parent_request_id,
            visible_to=viewer,
            limit=limit,
        )
        with self._reader() as session:
            return RequestSelector(session).list_requests(request_filter)

    def children(self, request_id: UUID) -> list[WorkflowRequest]:
        """Fan-out clones of ``request_id``."""
        with self._reader() as session:
            return RequestSelector(session).children_of(request_id)

    # -------------------------------------------------------------------------
    # Batch / lifecycle
    # -------------------------------------------------------------------------

    def dispatch(
        self, commands: Sequence[tuple[Hashable, Callable[[], Any]]],
    ) -> list[DispatchOutcome]:
        """Run commands keyed by aggregate id; same key in order, distinct keys in parallel."""
        return self.dispatcher.run(commands)

    def shutdown(self, wait: bool = True) -> None:
        self.gateway.shutdown(wait=wait)
        logger.info("engine_stopped")
