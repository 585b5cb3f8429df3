"""
Module: hierarchy_kernel.models.visit
Responsibility: ORM persistence for scheduled visits, their deadline ledger
    and their audit trail.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ (for DTO conversion) only.

Invariants enforced:
    - One ledger row per (visit, role) and per (visit, seq).
    - Audit rows are keyed by (visit, seq), seq strictly increasing, and are
      append-only: UPDATE and DELETE raise AppendOnlyViolationError.
    - ``revision`` is the optimistic-lock column.  Every mutation of the
      aggregate touches ``updated_at`` on the parent row, so a concurrent
      writer holding an older revision fails with StaleDataError.

Failure modes:
    - IntegrityError on duplicate (visit_id, role) or (visit_id, seq).
    - AppendOnlyViolationError on audit UPDATE/DELETE.
    - StaleDataError on a lost update (translated by the services).
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hierarchy_kernel.db.base import Base, UTCDateTime, UUIDString
from hierarchy_kernel.exceptions import AppendOnlyViolationError

if TYPE_CHECKING:
    from hierarchy_kernel.domain.visit import (
        DeadlineLedgerEntry,
        ScheduledVisit,
        VisitAuditEntry,
    )


class ScheduledVisitModel(Base):
    """Persistent scheduled visit (aggregate root)."""

    __tablename__ = "scheduled_visits"

    __table_args__ = (
        Index("ix_scheduled_visits_status_state", "status", "state"),
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    visit_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    final_deadline: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    state: Mapped[str] = mapped_column(String(100), nullable=False)
    verticals: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)

    ledger: Mapped[list["VisitDeadlineLedgerModel"]] = relationship(
        "VisitDeadlineLedgerModel",
        back_populates="visit",
        order_by="VisitDeadlineLedgerModel.seq",
        lazy="selectin",
    )
    audit_entries: Mapped[list["VisitAuditEntryModel"]] = relationship(
        "VisitAuditEntryModel",
        back_populates="visit",
        order_by="VisitAuditEntryModel.seq",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": revision}

    def __repr__(self) -> str:
        return f"<ScheduledVisit {self.id} state={self.state} status={self.status}>"

    def next_audit_seq(self) -> int:
        return len(self.audit_entries) + 1

    def ledger_row(self, role: str) -> VisitDeadlineLedgerModel | None:
        for row in self.ledger:
            if row.role == role:
                return row
        return None

    def to_dto(self, request_ids: tuple[UUID, ...] = ()) -> ScheduledVisit:
        """Convert ORM model to frozen domain DTO."""
        from hierarchy_kernel.domain.visit import ScheduledVisit, VisitStatus

        return ScheduledVisit(
            visit_id=self.id,
            title=self.title,
            purpose=self.purpose,
            visit_date=self.visit_date,
            final_deadline=self.final_deadline,
            state=self.state,
            verticals=tuple(self.verticals),
            status=VisitStatus(self.status),
            created_by=self.created_by,
            created_at=self.created_at,
            revision=self.revision,
            deadline_ledger=tuple(row.to_dto() for row in self.ledger),
            audit_trail=tuple(row.to_dto() for row in self.audit_entries),
            request_ids=tuple(request_ids),
        )


class VisitDeadlineLedgerModel(Base):
    """One role's due date on a visit.  Status and completion are mutable."""

    __tablename__ = "visit_deadline_ledger"

    __table_args__ = (
        UniqueConstraint("visit_id", "seq", name="uq_visit_ledger_seq"),
        UniqueConstraint("visit_id", "role", name="uq_visit_ledger_role"),
        Index("ix_visit_ledger_status_due", "entry_status", "due_at"),
    )

    visit_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("scheduled_visits.id"), nullable=False,
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    due_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    assigned_identity: Mapped[str | None] = mapped_column(String(200), nullable=True)
    entry_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    visit: Mapped["ScheduledVisitModel"] = relationship(
        "ScheduledVisitModel", back_populates="ledger",
    )

    def to_dto(self) -> DeadlineLedgerEntry:
        from hierarchy_kernel.domain.hierarchy import HierarchyRole
        from hierarchy_kernel.domain.visit import DeadlineLedgerEntry, LedgerEntryStatus

        return DeadlineLedgerEntry(
            role=HierarchyRole(self.role),
            due_at=self.due_at,
            assigned_identity=self.assigned_identity,
            entry_status=LedgerEntryStatus(self.entry_status),
            completed_at=self.completed_at,
        )


class VisitAuditEntryModel(Base):
    """Append-only audit record for a visit."""

    __tablename__ = "visit_audit_entries"

    __table_args__ = (
        UniqueConstraint("visit_id", "seq", name="uq_visit_audit_seq"),
    )

    visit_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("scheduled_visits.id"), nullable=False,
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(200), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)
    at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")

    visit: Mapped["ScheduledVisitModel"] = relationship(
        "ScheduledVisitModel", back_populates="audit_entries",
    )

    def to_dto(self) -> VisitAuditEntry:
        from hierarchy_kernel.domain.visit import VisitAction, VisitAuditEntry

        return VisitAuditEntry(
            seq=self.seq,
            action=VisitAction(self.action),
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            at=self.at,
            note=self.note,
        )


# =============================================================================
# ORM-Level Append-Only Enforcement
# =============================================================================


@event.listens_for(VisitAuditEntryModel, "before_update")
def prevent_visit_audit_update(mapper, connection, target):
    raise AppendOnlyViolationError(
        entity_type="VisitAuditEntry",
        entity_id=f"{target.visit_id}#{target.seq}",
        operation="update",
    )


@event.listens_for(VisitAuditEntryModel, "before_delete")
def prevent_visit_audit_delete(mapper, connection, target):
    raise AppendOnlyViolationError(
        entity_type="VisitAuditEntry",
        entity_id=f"{target.visit_id}#{target.seq}",
        operation="delete",
    )
