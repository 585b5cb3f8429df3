"""Tests for request and visit listing, visibility and deadline alerts."""

from datetime import datetime, timedelta, timezone

import pytest

from hierarchy_kernel.domain.hierarchy import Actor, HierarchyRole, RoleAssignment
from hierarchy_kernel.domain.request import RequestStatus
from hierarchy_kernel.domain.visit import VisitStatus
from hierarchy_kernel.exceptions import RequestNotFoundError, VisitNotFoundError
from tests.conftest import STATE, TIMELINE

UTC = timezone.utc


class TestRequestListing:
    def test_ordered_by_timeline(self, engine, create_request):
        late = create_request(timeline=TIMELINE + timedelta(days=10))
        early = create_request(timeline=TIMELINE)
        assert [r.request_id for r in engine.list_requests()] == [
            early.request_id, late.request_id,
        ]

    def test_status_filter(self, engine, create_request, actors):
        open_one = create_request()
        closed = create_request()
        engine.close_request(closed.request_id, actors["pmo"])

        assert [r.request_id for r in engine.list_requests(status=RequestStatus.CLOSED)] == [
            closed.request_id,
        ]
        assert [r.request_id for r in engine.list_requests(status="in_progress")] == [
            open_one.request_id,
        ]

    def test_assignee_filter(self, engine, create_request, actors):
        request = create_request()
        engine.approve(request.request_id, actors["yp"])
        assert engine.list_requests(assignee_id="yp-mh") == []
        assert len(engine.list_requests(assignee_id="hod-pune")) == 1

    def test_scope_state_filter(self, engine, create_request, actors, directory):
        directory.register("yp-goa", RoleAssignment(HierarchyRole.YP, state="Goa"))
        create_request()
        from hierarchy_kernel.domain.request import RequestTargets

        goa = engine.create_request(
            "Coastal tourism footfall",
            "Monthly visitor numbers for coastal districts",
            TIMELINE, RequestTargets(("Goa", STATE)), actors["pmo"],
        )
        assert [r.request_id for r in engine.list_requests(scope_state="Goa")] == [goa.request_id]
        assert len(engine.list_requests(scope_state=STATE)) == 2

    def test_limit(self, engine, create_request):
        for _ in range(3):
            create_request()
        assert len(engine.list_requests(limit=2)) == 2

    def test_zero_limit_matches_visit_listing(self, engine, create_request, create_visit):
        create_request()
        create_visit()
        assert engine.list_requests(limit=0) == []
        assert engine.list_visits(limit=0) == []

    def test_visit_filter(self, engine, create_visit, create_request):
        visit = create_visit()
        linked = create_request(visit_id=visit.visit_id)
        create_request()
        assert [r.request_id for r in engine.list_requests(visit_id=visit.visit_id)] == [
            linked.request_id,
        ]

    def test_get_unknown(self, engine):
        from uuid import uuid4

        with pytest.raises(RequestNotFoundError):
            engine.get_request(uuid4())


class TestRequestVisibility:
    def test_pmo_and_ceo_see_everything(self, engine, create_request, actors):
        create_request()
        create_request()
        assert len(engine.list_requests(viewer=actors["pmo"])) == 2
        assert len(engine.list_requests(viewer=actors["ceo"])) == 2

    def test_advisor_sees_own_state(self, engine, create_request, actors):
        create_request()
        other = Actor("advisor-goa", (RoleAssignment(HierarchyRole.ADVISOR, state="Goa"),))
        assert len(engine.list_requests(viewer=actors["advisor"])) == 1
        assert engine.list_requests(viewer=other) == []

    def test_others_see_assigned_only(self, engine, create_request, actors):
        create_request()
        assert len(engine.list_requests(viewer=actors["yp"])) == 1
        assert engine.list_requests(viewer=actors["hod_pune"]) == []
        assert engine.list_requests(viewer=actors["outsider"]) == []


class TestVisitListing:
    def test_filters(self, engine, create_visit, actors):
        first = create_visit(visit_date=datetime(2025, 7, 30, tzinfo=UTC))
        second = create_visit(state="Kerala")
        engine.activate(second.visit_id, actors["pmo"])

        assert [v.visit_id for v in engine.list_visits()] == [second.visit_id, first.visit_id]
        assert [v.visit_id for v in engine.list_visits(status=VisitStatus.DRAFT)] == [first.visit_id]
        assert [v.visit_id for v in engine.list_visits(state="Kerala")] == [second.visit_id]

    def test_visibility(self, engine, create_visit, actors):
        mh = create_visit()
        create_visit(state="Kerala")

        assert len(engine.list_visits(viewer=actors["ceo"])) == 2
        assert [v.visit_id for v in engine.list_visits(viewer=actors["advisor"])] == [mh.visit_id]
        # Ledger assignee sees the visit; others do not.
        assert [v.visit_id for v in engine.list_visits(viewer=actors["yp"])] == [mh.visit_id]
        assert engine.list_visits(viewer=actors["hod_nagpur"]) == []

    def test_get_unknown(self, engine):
        from uuid import uuid4

        with pytest.raises(VisitNotFoundError):
            engine.get_visit(uuid4())


class TestDeadlineAlerts:
    def test_counts(self, engine, create_request, create_visit, actors, deterministic_clock):
        create_request(timeline=datetime(2025, 5, 10, tzinfo=UTC))
        create_request(timeline=datetime(2025, 5, 20, 12, tzinfo=UTC))
        create_request(timeline=datetime(2025, 6, 20, tzinfo=UTC))
        closed = create_request(timeline=datetime(2025, 5, 11, tzinfo=UTC))
        engine.close_request(closed.request_id, actors["pmo"])
        visit = create_visit()
        engine.activate(visit.visit_id, actors["pmo"])

        summary = engine.deadline_alerts(datetime(2025, 5, 20, tzinfo=UTC))

        assert summary.overdue_requests == 1
        assert summary.upcoming_requests == 1
        assert summary.active_visits == 1

    def test_tightened_deadline_counts(self, engine, create_request, actors):
        request = create_request(actor=actors["pmo"], timeline=datetime(2025, 6, 20, tzinfo=UTC))
        engine.approve(request.request_id, actors["ceo"])
        engine.approve(
            request.request_id, actors["advisor"],
            tightened_deadline=datetime(2025, 5, 15, tzinfo=UTC),
        )
        summary = engine.deadline_alerts(datetime(2025, 5, 16, tzinfo=UTC))
        assert summary.overdue_requests == 1

    def test_defaults_to_clock(self, engine, deterministic_clock):
        assert engine.deadline_alerts().as_of == deterministic_clock.now()
