"""
Module: hierarchy_kernel.models.workflow_request
Responsibility: ORM persistence for workflow requests, their transition
    history and their submitted data versions.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ (for DTO conversion) only.

Invariants enforced:
    - History rows keyed by (request, seq) and version rows keyed by
      (request, version) are unique and append-only: UPDATE and DELETE
      raise AppendOnlyViolationError.
    - ``revision`` is the optimistic-lock column.  Every transition updates
      the parent row, so a concurrent writer holding an older revision
      fails with StaleDataError.
    - Fan-out clones reference their parent via ``parent_request_id``.

Failure modes:
    - IntegrityError on duplicate (request_id, seq) or (request_id, version).
    - AppendOnlyViolationError on history/version UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
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
    from hierarchy_kernel.domain.request import (
        RequestHistoryEntry,
        VersionRecord,
        WorkflowRequest,
    )


class WorkflowRequestModel(Base):
    """Persistent workflow request (aggregate root)."""

    __tablename__ = "workflow_requests"

    __table_args__ = (
        Index("ix_workflow_requests_status", "status"),
        Index("ix_workflow_requests_assignee", "current_assignee"),
        Index("ix_workflow_requests_visit", "visit_id"),
        Index("ix_workflow_requests_parent", "parent_request_id"),
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    info_need: Mapped[str] = mapped_column(Text, nullable=False)
    timeline: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    deadline: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    targets: Mapped[dict] = mapped_column(JSON, nullable=False)
    primary_state: Mapped[str] = mapped_column(String(100), nullable=False)
    visit_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("scheduled_visits.id"), nullable=True,
    )
    parent_request_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("workflow_requests.id"), nullable=True,
    )
    fan_out_parent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    current_stage: Mapped[str] = mapped_column(String(20), nullable=False)
    current_assignee: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    rollback_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_rollback_count: Mapped[int] = mapped_column(Integer, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)

    history: Mapped[list["WorkflowRequestHistoryModel"]] = relationship(
        "WorkflowRequestHistoryModel",
        back_populates="request",
        order_by="WorkflowRequestHistoryModel.seq",
        lazy="selectin",
    )
    versions: Mapped[list["WorkflowRequestVersionModel"]] = relationship(
        "WorkflowRequestVersionModel",
        back_populates="request",
        order_by="WorkflowRequestVersionModel.version",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": revision}

    def __repr__(self) -> str:
        return (
            f"<WorkflowRequest {self.id} stage={self.current_stage} "
            f"status={self.status}>"
        )

    def next_history_seq(self) -> int:
        return len(self.history) + 1

    def to_dto(self) -> WorkflowRequest:
        """Convert ORM model to frozen domain DTO."""
        from hierarchy_kernel.domain.hierarchy import HierarchyRole
        from hierarchy_kernel.domain.request import (
            RequestStatus,
            RequestTargets,
            WorkflowRequest,
        )

        return WorkflowRequest(
            request_id=self.id,
            title=self.title,
            info_need=self.info_need,
            timeline=self.timeline,
            targets=RequestTargets.from_dict(self.targets),
            status=RequestStatus(self.status),
            current_stage=HierarchyRole(self.current_stage),
            created_by=self.created_by,
            created_at=self.created_at,
            revision=self.revision,
            deadline=self.deadline,
            current_assignee=self.current_assignee,
            visit_id=self.visit_id,
            parent_request_id=self.parent_request_id,
            fan_out_parent=self.fan_out_parent,
            version=self.version,
            rollback_count=self.rollback_count,
            max_rollback_count=self.max_rollback_count,
            history=tuple(row.to_dto() for row in self.history),
            version_history=tuple(row.to_dto() for row in self.versions),
        )


class WorkflowRequestHistoryModel(Base):
    """Append-only transition record for a request."""

    __tablename__ = "workflow_request_history"

    __table_args__ = (
        UniqueConstraint("request_id", "seq", name="uq_request_history_seq"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_requests.id"), nullable=False,
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(200), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)
    at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    from_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")

    request: Mapped["WorkflowRequestModel"] = relationship(
        "WorkflowRequestModel", back_populates="history",
    )

    def to_dto(self) -> RequestHistoryEntry:
        from hierarchy_kernel.domain.hierarchy import HierarchyRole
        from hierarchy_kernel.domain.request import HistoryAction, RequestHistoryEntry

        return RequestHistoryEntry(
            seq=self.seq,
            action=HistoryAction(self.action),
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            at=self.at,
            from_stage=HierarchyRole(self.from_stage) if self.from_stage else None,
            to_stage=HierarchyRole(self.to_stage) if self.to_stage else None,
            note=self.note,
        )


class WorkflowRequestVersionModel(Base):
    """Append-only submitted data version."""

    __tablename__ = "workflow_request_versions"

    __table_args__ = (
        UniqueConstraint("request_id", "version", name="uq_request_version"),
    )

    request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_requests.id"), nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    submitted_by: Mapped[str] = mapped_column(String(200), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")

    request: Mapped["WorkflowRequestModel"] = relationship(
        "WorkflowRequestModel", back_populates="versions",
    )

    def to_dto(self) -> VersionRecord:
        from hierarchy_kernel.domain.request import VersionRecord

        return VersionRecord(
            version=self.version,
            payload=self.payload,
            submitted_by=self.submitted_by,
            submitted_at=self.submitted_at,
            note=self.note,
        )


# =============================================================================
# ORM-Level Append-Only Enforcement
# =============================================================================


@event.listens_for(WorkflowRequestHistoryModel, "before_update")
def prevent_history_update(mapper, connection, target):
    raise AppendOnlyViolationError(
        entity_type="WorkflowRequestHistory",
        entity_id=f"{target.request_id}#{target.seq}",
        operation="update",
    )


@event.listens_for(WorkflowRequestHistoryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    raise AppendOnlyViolationError(
        entity_type="WorkflowRequestHistory",
        entity_id=f"{target.request_id}#{target.seq}",
        operation="delete",
    )


@event.listens_for(WorkflowRequestVersionModel, "before_update")
def prevent_version_update(mapper, connection, target):
    raise AppendOnlyViolationError(
        entity_type="WorkflowRequestVersion",
        entity_id=f"{target.request_id}#v{target.version}",
        operation="update",
    )


@event.listens_for(WorkflowRequestVersionModel, "before_delete")
def prevent_version_delete(mapper, connection, target):
    raise AppendOnlyViolationError(
        entity_type="WorkflowRequestVersion",
        entity_id=f"{target.request_id}#v{target.version}",
        operation="delete",
    )
