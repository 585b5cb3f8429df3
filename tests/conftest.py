"""
Pytest fixtures for the hierarchy workflow engine test suite.

Provides:
- Structured log capture
- Deterministic clock
- Per-test SQLite database (file in tmp_path, WAL mode)
- Seeded in-memory directory, template store and recording event sink
- A wired HierarchyWorkflowEngine and factories for visits and requests
"""

import json
import logging
from datetime import datetime, timezone
from io import StringIO

import pytest

from hierarchy_config import EngineSettings
from hierarchy_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from hierarchy_kernel.domain.clock import DeterministicClock
from hierarchy_kernel.domain.hierarchy import Actor, HierarchyRole, RoleAssignment
from hierarchy_kernel.domain.request import RequestTargets
from hierarchy_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from hierarchy_services import (
    HierarchyWorkflowEngine,
    InMemoryDirectory,
    InMemoryTemplateStore,
    RecordingEventSink,
)

STATE = "Maharashtra"
VISIT_DATE = datetime(2025, 6, 30, tzinfo=timezone.utc)
FINAL_DEADLINE = datetime(2025, 6, 5, tzinfo=timezone.utc)
TIMELINE = datetime(2025, 6, 1, tzinfo=timezone.utc)


def make_actor(actor_id: str, *assignments: RoleAssignment) -> Actor:
    return Actor(actor_id=actor_id, assignments=tuple(assignments))


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture hierarchy_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, engine):
            engine.create_visit(...)
            logs = captured_logs()
            assert any(r["message"] == "visit_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("hierarchy_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for aggregate locks"
    )


# =============================================================================
# Clock / database
# =============================================================================


@pytest.fixture
def deterministic_clock() -> DeterministicClock:
    """Fixed at 2025-05-01 09:00 UTC."""
    return DeterministicClock()


@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    init_engine_from_url(f"sqlite:///{tmp_path / 'hierarchy.db'}")
    create_tables()
    yield get_session_factory()
    reset_engine()


# =============================================================================
# Actors and collaborators
# =============================================================================


@pytest.fixture
def actors() -> dict[str, Actor]:
    """One holder per role in Maharashtra, HODs for Pune and Nagpur only."""
    return {
        "pmo": make_actor("pmo-1", RoleAssignment(HierarchyRole.PMO)),
        "ceo": make_actor("ceo-1", RoleAssignment(HierarchyRole.CEO)),
        "advisor": make_actor(
            "advisor-mh", RoleAssignment(HierarchyRole.ADVISOR, state=STATE),
        ),
        "yp": make_actor("yp-mh", RoleAssignment(HierarchyRole.YP, state=STATE)),
        "hod_pune": make_actor(
            "hod-pune", RoleAssignment(HierarchyRole.HOD, state=STATE, branch="Pune"),
        ),
        "hod_nagpur": make_actor(
            "hod-nagpur", RoleAssignment(HierarchyRole.HOD, state=STATE, branch="Nagpur"),
        ),
        "dyp_pune": make_actor(
            "dyp-pune",
            RoleAssignment(HierarchyRole.DIVISION_YP, state=STATE, branch="Pune"),
        ),
        "outsider": make_actor("visitor-1"),
    }


@pytest.fixture
def actors_by_id(actors) -> dict[str, Actor]:
    return {a.actor_id: a for a in actors.values()}


@pytest.fixture
def directory(actors) -> InMemoryDirectory:
    return InMemoryDirectory.from_actors(actors.values())


@pytest.fixture
def template_store() -> InMemoryTemplateStore:
    store = InMemoryTemplateStore()
    store.activate(STATE, "Health")
    return store


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        directory_timeout_seconds=0.5,
        template_timeout_seconds=0.5,
        event_timeout_seconds=0.5,
        lock_timeout_seconds=5.0,
    )


# =============================================================================
# Engine
# =============================================================================


@pytest.fixture
def build_engine(session_factory, template_store, event_sink, settings, deterministic_clock, directory):
    """Factory for engines with overridden collaborators or settings."""
    built: list[HierarchyWorkflowEngine] = []

    def _build(**overrides) -> HierarchyWorkflowEngine:
        engine = HierarchyWorkflowEngine(
            session_factory=session_factory,
            directory=overrides.get("directory", directory),
            template_store=overrides.get("template_store", template_store),
            event_sink=overrides.get("event_sink", event_sink),
            settings=overrides.get("settings", settings),
            clock=overrides.get("clock", deterministic_clock),
        )
        built.append(engine)
        return engine

    yield _build

    for engine in built:
        engine.shutdown()


@pytest.fixture
def engine(build_engine) -> HierarchyWorkflowEngine:
    return build_engine()


@pytest.fixture
def create_visit(engine, actors):
    def _create(**kwargs):
        params = dict(
            title="Monsoon preparedness review",
            purpose="Review district readiness ahead of the monsoon season",
            visit_date=VISIT_DATE,
            state=STATE,
            verticals=["Health", "Infrastructure"],
            final_deadline=FINAL_DEADLINE,
            actor=actors["pmo"],
        )
        params.update(kwargs)
        return engine.create_visit(**params)

    return _create


@pytest.fixture
def create_request(engine, actors):
    """Create a request; defaults to an Advisor-originated single-branch request."""

    def _create(actor=None, branches=("Pune",), verticals=("Health",), **kwargs):
        params = dict(
            title="District health facility census",
            info_need="Number of operational primary health centres per block",
            timeline=TIMELINE,
            targets=RequestTargets(
                states=(STATE,), branches=tuple(branches), verticals=tuple(verticals),
            ),
            actor=actor or actors["advisor"],
        )
        params.update(kwargs)
        return engine.create_request(**params)

    return _create


@pytest.fixture
def approve_as_assignee(engine, actors_by_id):
    """Approve a request as whoever currently holds it."""

    def _approve(request, **kwargs):
        current = engine.get_request(request.request_id)
        return engine.approve(current.request_id, actors_by_id[current.current_assignee], **kwargs)

    return _approve
