"""
AggregateService -- common shell for services that own an aggregate.

Responsibility:
    Provides the constructor and transaction helpers shared by the visit
    and workflow services.  Unlike a flush-only service, an aggregate
    service owns its transactions: each public operation reads a snapshot,
    talks to collaborators with no transaction open, then re-loads and
    writes in one short transaction.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Every write happens under the aggregate's in-process lock.
    - The revision read in the snapshot phase must still be current at
      write time; otherwise ConcurrentModificationError.
    - A lost update detected by the ORM (StaleDataError) surfaces as
      ConcurrentModificationError, never as a raw SQLAlchemy error.
    - A failing write leaves the persisted aggregate untouched.
"""

from __future__ import annotations

from abc import ABC
from contextlib import contextmanager
from typing import Callable, Iterator
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from hierarchy_kernel.db.engine import session_scope
from hierarchy_kernel.domain.clock import Clock, SystemClock
from hierarchy_kernel.domain.hierarchy import Actor, HierarchyRole
from hierarchy_kernel.exceptions import (
    ConcurrentModificationError,
    NoHierarchyRoleError,
    RoleRequiredError,
)
from hierarchy_kernel.logging_config import get_logger
from hierarchy_kernel.services.aggregate_locks import AggregateLockRegistry

logger = get_logger("services.base")


class AggregateService(ABC):
    """
    Base for services that own one aggregate type.

    Contract:
        Subclasses set ``ENTITY_TYPE`` and use ``_read`` for snapshot
        reads and ``_write`` for the mutation phase.
    """

    ENTITY_TYPE: str = "Aggregate"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        locks: AggregateLockRegistry | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._locks = locks or AggregateLockRegistry()
        self._clock = clock or SystemClock()

    @contextmanager
    def _read(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def _lock(self, entity_id: UUID) -> Iterator[None]:
        with self._locks.hold(self.ENTITY_TYPE, entity_id):
            yield

    @contextmanager
    def _write(self, entity_id: UUID) -> Iterator[Session]:
        """Transaction for the mutation phase; commit or roll back."""
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except StaleDataError as exc:
            logger.warning(
                "stale_write_detected",
                extra={"entity_type": self.ENTITY_TYPE, "entity_id": str(entity_id)},
            )
            raise ConcurrentModificationError(self.ENTITY_TYPE, str(entity_id)) from exc

    def _check_revision(
        self,
        entity_id: UUID,
        expected: int | None,
        actual: int,
    ) -> None:
        if expected is not None and expected != actual:
            raise ConcurrentModificationError(
                self.ENTITY_TYPE, str(entity_id),
                expected_revision=expected, actual_revision=actual,
            )

    @staticmethod
    def _hierarchy_role(actor: Actor) -> HierarchyRole:
        role = actor.hierarchy_role
        if role is None:
            raise NoHierarchyRoleError(actor.actor_id)
        return role

    @staticmethod
    def _require_any_role(
        actor: Actor,
        roles: tuple[HierarchyRole, ...],
        operation: str,
    ) -> None:
        if not any(actor.holds(r) for r in roles):
            raise RoleRequiredError(
                actor.actor_id, tuple(r.value for r in roles), operation,
            )
