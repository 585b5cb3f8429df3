"""Tests for the workflow request state machine."""

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings
from hypothesis import strategies as st

from hierarchy_config import EngineSettings
from hierarchy_kernel.domain.collaborators import EventKind
from hierarchy_kernel.domain.hierarchy import HierarchyRole
from hierarchy_kernel.domain.request import HistoryAction, RequestStatus, RequestTargets
from hierarchy_kernel.exceptions import (
    CannotRejectAtTopLevelError,
    ConcurrentModificationError,
    DependencyUnavailableError,
    FieldValidationError,
    NoActiveTemplateError,
    NotCurrentAssigneeError,
    PreviousAssigneeNotFoundError,
    RequestClosedError,
    RoleRequiredError,
    RollbackLimitReachedError,
    StateConflictError,
    VisitNotFoundError,
)
from hierarchy_kernel.services.workflow_service import WorkflowService
from hierarchy_services import InMemoryDirectory
from tests.conftest import STATE, TIMELINE

UTC = timezone.utc


class SlowDirectory(InMemoryDirectory):
    """Directory whose lookups for some roles take too long."""

    def __init__(self, entries, slow_roles, delay=0.3):
        super().__init__(entries)
        self.slow_roles = set(slow_roles)
        self.delay = delay

    def resolve(self, role, scope):
        if role in self.slow_roles:
            time.sleep(self.delay)
        return super().resolve(role, scope)


@pytest.fixture
def fast_timeout_settings():
    return EngineSettings(
        directory_timeout_seconds=0.05,
        template_timeout_seconds=0.05,
        event_timeout_seconds=0.5,
    )


def _slow_engine(build_engine, actors, slow_roles, settings):
    directory = SlowDirectory(
        [(a.actor_id, asg) for a in actors.values() for asg in a.assignments],
        slow_roles,
    )
    return build_engine(directory=directory, settings=settings)


def _to_division_yp(engine, create_request, actors):
    """Advisor -> YP -> HOD(Pune) -> DivisionYP(Pune)."""
    request = create_request()
    engine.approve(request.request_id, actors["yp"])
    return engine.approve(request.request_id, actors["hod_pune"])


class TestCreateRequest:
    def test_assigned_to_next_role(self, create_request, actors):
        request = create_request()

        assert request.status is RequestStatus.IN_PROGRESS
        assert request.current_stage is HierarchyRole.YP
        assert request.current_assignee == "yp-mh"
        assert request.version == 1
        assert request.rollback_count == 0
        assert request.max_rollback_count == 3
        assert request.created_by == actors["advisor"].actor_id

        created = request.history[0]
        assert created.action is HistoryAction.CREATED
        assert created.from_stage is None
        assert created.to_stage is HierarchyRole.YP

    def test_open_when_next_role_unheld(self, create_request, directory, actors):
        directory.remove("ceo-1")
        request = create_request(actor=actors["pmo"])

        assert request.status is RequestStatus.OPEN
        assert request.current_assignee is None
        assert request.current_stage is HierarchyRole.PMO

    def test_highest_role_is_origin(self, create_request, actors):
        from hierarchy_kernel.domain.hierarchy import Actor, RoleAssignment

        dual = Actor("dual", (
            RoleAssignment(HierarchyRole.YP, state=STATE),
            RoleAssignment(HierarchyRole.CEO),
        ))
        request = create_request(actor=dual)
        assert request.history[0].actor_role == "CEO"
        assert request.current_stage is HierarchyRole.ADVISOR

    def test_events(self, create_request, event_sink):
        request = create_request()
        assert event_sink.kinds() == [EventKind.REQUEST_CREATED, EventKind.REQUEST_ASSIGNED]
        assigned = event_sink.of_kind(EventKind.REQUEST_ASSIGNED)[0]
        assert assigned.payload == {
            "request_id": request.request_id,
            "assignee_id": "yp-mh",
            "stage": "YP",
            "due_at": TIMELINE,
        }

    @pytest.mark.parametrize("role_key", ["yp", "hod_pune", "dyp_pune"])
    def test_creator_roles(self, create_request, actors, role_key):
        with pytest.raises(RoleRequiredError):
            create_request(actor=actors[role_key])

    def test_timeline_must_be_future(self, create_request, deterministic_clock):
        with pytest.raises(FieldValidationError) as exc_info:
            create_request(timeline=deterministic_clock.now())
        assert exc_info.value.field_name == "timeline"

    def test_unknown_visit(self, create_request):
        from uuid import uuid4

        with pytest.raises(VisitNotFoundError):
            create_request(visit_id=uuid4())

    def test_linked_visit_lists_request(self, engine, create_visit, create_request):
        visit = create_visit()
        request = create_request(visit_id=visit.visit_id)
        assert engine.get_visit(visit.visit_id).request_ids == (request.request_id,)

    def test_directory_timeout_is_fatal(self, build_engine, actors, fast_timeout_settings):
        engine = _slow_engine(build_engine, actors, {HierarchyRole.YP}, fast_timeout_settings)
        with pytest.raises(DependencyUnavailableError) as exc_info:
            engine.create_request(
                "District health facility census",
                "Number of operational primary health centres per block",
                TIMELINE, RequestTargets((STATE,), ("Pune",)), actors["advisor"],
            )
        assert exc_info.value.collaborator == "directory"
        assert engine.list_requests() == []


class TestApprove:
    def test_forwards_to_next_role(self, engine, create_request, actors, event_sink):
        request = create_request()
        event_sink.clear()
        approved = engine.approve(request.request_id, actors["yp"], note="looks fine")

        assert approved.status is RequestStatus.IN_PROGRESS
        assert approved.current_stage is HierarchyRole.HOD
        assert approved.current_assignee == "hod-pune"
        last = approved.history[-1]
        assert last.action is HistoryAction.APPROVED
        assert (last.from_stage, last.to_stage) == (HierarchyRole.YP, HierarchyRole.HOD)
        assert last.note == "looks fine"
        assert event_sink.kinds() == [EventKind.REQUEST_FORWARDED, EventKind.REQUEST_ASSIGNED]

    def test_terminal_approval_at_lowest_role(self, engine, create_request, actors):
        request = _to_division_yp(engine, create_request, actors)
        assert request.current_assignee == "dyp-pune"

        done = engine.approve(request.request_id, actors["dyp_pune"])
        assert done.status is RequestStatus.APPROVED
        assert done.current_assignee is None
        assert done.current_stage is HierarchyRole.DIVISION_YP
        assert done.history[-1].to_stage is None

    def test_unresolvable_next_role_approves(self, engine, create_request, actors, directory):
        request = create_request(branches=("Mumbai",))
        done = engine.approve(request.request_id, actors["yp"])
        assert done.status is RequestStatus.APPROVED
        assert done.current_assignee is None
        assert done.current_stage is HierarchyRole.YP

    def test_next_role_timeout_degrades_to_approval(
        self, build_engine, actors, fast_timeout_settings, captured_logs,
    ):
        engine = _slow_engine(build_engine, actors, {HierarchyRole.HOD}, fast_timeout_settings)
        request = engine.create_request(
            "District health facility census",
            "Number of operational primary health centres per block",
            TIMELINE, RequestTargets((STATE,), ("Pune",)), actors["advisor"],
        )
        done = engine.approve(request.request_id, actors["yp"])

        assert done.status is RequestStatus.APPROVED
        messages = [r["message"] for r in captured_logs()]
        assert "collaborator_timeout" in messages
        assert "assignee_resolution_degraded" in messages

    def test_only_current_assignee(self, engine, create_request, actors):
        request = create_request()
        with pytest.raises(NotCurrentAssigneeError) as exc_info:
            engine.approve(request.request_id, actors["pmo"])
        assert exc_info.value.assignee_id == "yp-mh"
        assert engine.get_request(request.request_id) == request

    def test_open_request_has_no_assignee(self, engine, create_request, directory, actors):
        directory.remove("ceo-1")
        request = create_request(actor=actors["pmo"])
        with pytest.raises(NotCurrentAssigneeError):
            engine.approve(request.request_id, actors["pmo"])

    def test_stale_expected_revision(self, engine, create_request, actors):
        request = create_request()
        with pytest.raises(ConcurrentModificationError):
            engine.approve(request.request_id, actors["yp"], expected_revision=request.revision + 1)


class TestDeadlineTightening:
    def _at_advisor(self, engine, create_request, actors):
        request = create_request(actor=actors["pmo"])
        return engine.approve(request.request_id, actors["ceo"])

    def test_advisor_tightens_earlier_deadline(self, engine, create_request, actors):
        request = self._at_advisor(engine, create_request, actors)
        assert request.current_assignee == "advisor-mh"
        tighter = TIMELINE - timedelta(days=5)

        forwarded = engine.approve(request.request_id, actors["advisor"], tightened_deadline=tighter)

        assert forwarded.deadline == tighter
        assert forwarded.effective_deadline == tighter
        assert [h.action for h in forwarded.history[-2:]] == [
            HistoryAction.DEADLINE_TIGHTENED, HistoryAction.APPROVED,
        ]

    def test_later_deadline_ignored(self, engine, create_request, actors):
        request = self._at_advisor(engine, create_request, actors)
        forwarded = engine.approve(
            request.request_id, actors["advisor"],
            tightened_deadline=TIMELINE + timedelta(days=5),
        )
        assert forwarded.deadline is None
        assert HistoryAction.DEADLINE_TIGHTENED not in [h.action for h in forwarded.history]

    def test_non_advisor_cannot_tighten(self, engine, create_request, actors):
        request = create_request()
        forwarded = engine.approve(
            request.request_id, actors["yp"], tightened_deadline=TIMELINE - timedelta(days=5),
        )
        assert forwarded.deadline is None

    def test_assignment_event_carries_tightened_deadline(
        self, engine, create_request, actors, event_sink,
    ):
        request = self._at_advisor(engine, create_request, actors)
        tighter = TIMELINE - timedelta(days=3)
        engine.approve(request.request_id, actors["advisor"], tightened_deadline=tighter)
        assert event_sink.of_kind(EventKind.REQUEST_ASSIGNED)[-1].payload["due_at"] == tighter


class TestFanOut:
    BRANCHES = ("Pune", "Nagpur", "Mumbai")

    def test_one_clone_per_branch(self, engine, create_request, actors):
        request = create_request(branches=self.BRANCHES)
        parent = engine.approve(request.request_id, actors["yp"])

        assert parent.status is RequestStatus.IN_PROGRESS
        assert parent.current_assignee is None
        assert parent.current_stage is HierarchyRole.YP
        assert parent.fan_out_parent is True

        clones = engine.children(request.request_id)
        assert len(clones) == 3
        assert sorted(c.targets.branches for c in clones) == sorted((b,) for b in self.BRANCHES)
        for clone in clones:
            assert clone.current_stage is HierarchyRole.HOD
            assert clone.parent_request_id == request.request_id
            assert clone.request_id != request.request_id
            assert clone.history[0].action is HistoryAction.FORWARDED
            assert clone.history[0].note == clone.targets.primary_branch

    def test_clone_assignees_per_branch(self, engine, create_request, actors):
        request = create_request(branches=self.BRANCHES)
        engine.approve(request.request_id, actors["yp"])

        by_branch = {c.targets.primary_branch: c for c in engine.children(request.request_id)}
        assert by_branch["Pune"].current_assignee == "hod-pune"
        assert by_branch["Nagpur"].current_assignee == "hod-nagpur"
        # Nobody holds HOD for Mumbai.
        assert by_branch["Mumbai"].current_assignee is None
        assert by_branch["Mumbai"].status is RequestStatus.OPEN

    def test_clones_progress_independently(self, engine, create_request, actors):
        request = create_request(branches=self.BRANCHES)
        engine.approve(request.request_id, actors["yp"])
        pune = next(
            c for c in engine.children(request.request_id)
            if c.targets.primary_branch == "Pune"
        )

        forwarded = engine.approve(pune.request_id, actors["hod_pune"])
        assert forwarded.current_assignee == "dyp-pune"
        nagpur = next(
            c for c in engine.children(request.request_id)
            if c.targets.primary_branch == "Nagpur"
        )
        assert nagpur.current_stage is HierarchyRole.HOD

    def test_parent_cannot_be_approved_again(self, engine, create_request, actors):
        request = create_request(branches=self.BRANCHES)
        engine.approve(request.request_id, actors["yp"])
        with pytest.raises(NotCurrentAssigneeError):
            engine.approve(request.request_id, actors["yp"])

    def test_fan_out_events(self, engine, create_request, actors, event_sink):
        request = create_request(branches=self.BRANCHES)
        event_sink.clear()
        engine.approve(request.request_id, actors["yp"])

        assert len(event_sink.of_kind(EventKind.REQUEST_FORWARDED)) == 3
        assert len(event_sink.of_kind(EventKind.REQUEST_ASSIGNED)) == 2

    def test_single_branch_does_not_fork(self, engine, create_request, actors):
        request = create_request(branches=("Pune",))
        engine.approve(request.request_id, actors["yp"])
        assert engine.children(request.request_id) == []

    def test_failed_clone_leaves_parent_untouched(
        self, engine, create_request, actors, monkeypatch,
    ):
        request = create_request(branches=self.BRANCHES)
        before = engine.get_request(request.request_id)
        original = WorkflowService._build_clone
        calls = []

        def failing_build_clone(self, *args, **kwargs):
            calls.append(args)
            if len(calls) == 2:
                raise RuntimeError("clone construction failed")
            return original(self, *args, **kwargs)

        monkeypatch.setattr(WorkflowService, "_build_clone", failing_build_clone)

        with pytest.raises(RuntimeError):
            engine.approve(request.request_id, actors["yp"])

        assert engine.children(request.request_id) == []
        after = engine.get_request(request.request_id)
        assert after.current_assignee == "yp-mh"
        assert after.fan_out_parent is False
        assert after.status is RequestStatus.IN_PROGRESS
        assert after.rollback_count == before.rollback_count
        assert after.revision == before.revision
        assert after.history == before.history

        # The aggregate lock was released; a retry succeeds.
        monkeypatch.setattr(WorkflowService, "_build_clone", original)
        parent = engine.approve(request.request_id, actors["yp"])
        assert parent.fan_out_parent is True
        assert len(engine.children(request.request_id)) == 3


class TestReject:
    def test_sends_back_one_stage(self, engine, create_request, actors):
        request = create_request()
        engine.approve(request.request_id, actors["yp"])
        rejected = engine.reject(request.request_id, actors["hod_pune"], note="incomplete")

        assert rejected.status is RequestStatus.IN_PROGRESS
        assert rejected.current_stage is HierarchyRole.YP
        assert rejected.current_assignee == "yp-mh"
        assert rejected.rollback_count == 1
        last = rejected.history[-1]
        assert last.action is HistoryAction.REJECTED
        assert (last.from_stage, last.to_stage) == (HierarchyRole.HOD, HierarchyRole.YP)

    def test_top_level_reject_refused(self, engine, create_request, actors):
        request = create_request(actor=actors["pmo"])
        at_pmo = engine.reject(request.request_id, actors["ceo"])
        assert at_pmo.current_stage is HierarchyRole.PMO
        assert at_pmo.current_assignee == "pmo-1"

        with pytest.raises(CannotRejectAtTopLevelError):
            engine.reject(request.request_id, actors["pmo"])
        assert engine.get_request(request.request_id) == at_pmo

    def test_previous_assignee_missing_is_fatal(self, engine, create_request, actors, directory):
        request = create_request()
        directory.remove("advisor-mh")
        with pytest.raises(PreviousAssigneeNotFoundError) as exc_info:
            engine.reject(request.request_id, actors["yp"])
        assert exc_info.value.role == "Advisor"
        assert engine.get_request(request.request_id) == request

    def test_previous_assignee_timeout_is_fatal(self, build_engine, actors, fast_timeout_settings):
        engine = _slow_engine(build_engine, actors, {HierarchyRole.ADVISOR}, fast_timeout_settings)
        request = engine.create_request(
            "District health facility census",
            "Number of operational primary health centres per block",
            TIMELINE, RequestTargets((STATE,), ("Pune",)), actors["advisor"],
        )
        with pytest.raises(DependencyUnavailableError):
            engine.reject(request.request_id, actors["yp"])
        assert engine.get_request(request.request_id).rollback_count == 0

    def test_rollback_ceiling(self, engine, create_request, actors):
        request = create_request(actor=actors["pmo"])
        for expected in (1, 2, 3):
            rejected = engine.reject(request.request_id, actors["ceo"])
            assert rejected.rollback_count == expected
            engine.approve(request.request_id, actors["pmo"])

        before = engine.get_request(request.request_id)
        with pytest.raises(RollbackLimitReachedError) as exc_info:
            engine.reject(request.request_id, actors["ceo"])
        assert isinstance(exc_info.value, StateConflictError)
        assert exc_info.value.rollback_count == 3
        assert engine.get_request(request.request_id) == before

    def test_reject_events(self, engine, create_request, actors, event_sink):
        request = create_request()
        engine.approve(request.request_id, actors["yp"])
        event_sink.clear()
        engine.reject(request.request_id, actors["hod_pune"])
        assert event_sink.kinds() == [EventKind.REQUEST_REJECTED, EventKind.REQUEST_ASSIGNED]


class TestSubmit:
    def test_versions_increase_by_one(self, engine, create_request, actors, event_sink):
        request = _to_division_yp(engine, create_request, actors)
        first = engine.submit(request.request_id, actors["dyp_pune"], {"phc_count": 41})
        second = engine.submit(request.request_id, actors["dyp_pune"], {"phc_count": 42}, note="fix")

        assert first.version == 2
        assert second.version == 3
        assert [v.version for v in second.version_history] == [2, 3]
        assert second.version_history[1].payload == {"phc_count": 42}
        assert second.version_history[1].note == "fix"
        # Submission does not move the request.
        assert second.current_stage is HierarchyRole.DIVISION_YP
        assert second.current_assignee == "dyp-pune"
        assert len(event_sink.of_kind(EventKind.REQUEST_SUBMITTED)) == 2

    def test_only_division_yp(self, engine, create_request, actors):
        request = create_request()
        with pytest.raises(RoleRequiredError):
            engine.submit(request.request_id, actors["yp"], {"x": 1})

    def test_requires_active_template(self, engine, create_request, actors, template_store):
        request = _to_division_yp(engine, create_request, actors)
        template_store.deactivate(STATE, "Health")
        with pytest.raises(NoActiveTemplateError) as exc_info:
            engine.submit(request.request_id, actors["dyp_pune"], {"x": 1})
        assert (exc_info.value.state, exc_info.value.vertical) == (STATE, "Health")
        assert engine.get_request(request.request_id).version == 1

    def test_payload_required(self, engine, create_request, actors):
        request = _to_division_yp(engine, create_request, actors)
        with pytest.raises(FieldValidationError):
            engine.submit(request.request_id, actors["dyp_pune"], None)

    @pytest.mark.parametrize(
        "payload",
        [
            {"at": datetime(2025, 1, 1, tzinfo=UTC)},
            {"amount": Decimal("12.50")},
            {"tags": {"a", "b"}},
        ],
    )
    def test_payload_must_be_json_serializable(self, engine, create_request, actors, payload):
        request = _to_division_yp(engine, create_request, actors)
        with pytest.raises(FieldValidationError) as exc_info:
            engine.submit(request.request_id, actors["dyp_pune"], payload)

        assert exc_info.value.field_name == "payload"
        after = engine.get_request(request.request_id)
        assert after.version == 1
        assert after.version_history == ()
        assert after.revision == request.revision

    @hypothesis_settings(
        max_examples=10, deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(submissions=st.integers(min_value=1, max_value=5))
    def test_version_history_has_no_gaps(self, engine, create_request, actors, submissions):
        request = _to_division_yp(engine, create_request, actors)
        for i in range(submissions):
            result = engine.submit(request.request_id, actors["dyp_pune"], {"n": i})
        assert result.version == submissions + 1
        assert [v.version for v in result.version_history] == [
            i + 2 for i in range(submissions)
        ]


class TestTerminalRequests:
    def _approved(self, engine, create_request, actors):
        request = create_request(branches=("Mumbai",))
        return engine.approve(request.request_id, actors["yp"])

    def test_no_further_transitions(self, engine, create_request, actors):
        done = self._approved(engine, create_request, actors)
        assert done.status is RequestStatus.APPROVED

        for attempt in (
            lambda: engine.approve(done.request_id, actors["yp"]),
            lambda: engine.reject(done.request_id, actors["yp"]),
            lambda: engine.submit(done.request_id, actors["dyp_pune"], {"x": 1}),
        ):
            with pytest.raises(RequestClosedError):
                attempt()
        assert engine.get_request(done.request_id) == done


class TestCloseRequest:
    def test_creator_closes(self, engine, create_request, actors, event_sink):
        request = create_request()
        closed = engine.close_request(request.request_id, actors["advisor"], note="withdrawn")

        assert closed.status is RequestStatus.CLOSED
        assert closed.current_assignee is None
        assert closed.history[-1].action is HistoryAction.CLOSED
        assert event_sink.of_kind(EventKind.REQUEST_CLOSED)[0].payload["outcome"] == "closed"

    def test_pmo_closes_as_rejected(self, engine, create_request, actors):
        request = create_request()
        closed = engine.close_request(request.request_id, actors["pmo"], outcome=RequestStatus.REJECTED)
        assert closed.status is RequestStatus.REJECTED
        with pytest.raises(RequestClosedError):
            engine.approve(request.request_id, actors["yp"])

    def test_others_refused(self, engine, create_request, actors):
        request = create_request()
        with pytest.raises(RoleRequiredError):
            engine.close_request(request.request_id, actors["yp"])

    def test_bad_outcome(self, engine, create_request, actors):
        request = create_request()
        with pytest.raises(FieldValidationError):
            engine.close_request(request.request_id, actors["pmo"], outcome=RequestStatus.APPROVED)

    def test_terminal_cannot_close(self, engine, create_request, actors):
        request = create_request()
        engine.close_request(request.request_id, actors["pmo"])
        with pytest.raises(RequestClosedError):
            engine.close_request(request.request_id, actors["pmo"])


class TestEventFailures:
    def test_sink_failure_does_not_undo_transition(
        self, build_engine, actors, captured_logs,
    ):
        from hierarchy_services import RecordingEventSink

        engine = build_engine(event_sink=RecordingEventSink(fail=True))
        request = engine.create_request(
            "District health facility census",
            "Number of operational primary health centres per block",
            TIMELINE, RequestTargets((STATE,), ("Pune",)), actors["advisor"],
        )

        assert engine.get_request(request.request_id).current_assignee == "yp-mh"
        failures = [r for r in captured_logs() if r["message"] == "event_delivery_failed"]
        assert [f["event_kind"] for f in failures] == ["request_created", "request_assigned"]
