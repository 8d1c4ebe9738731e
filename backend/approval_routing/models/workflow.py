"""Workflow instance, step history and rejection history models."""
import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_routing.db.base import Base, CreatedAtMixin, TimestampMixin, UUIDMixin


class WorkflowStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    approved = "approved"
    rejected = "rejected"
    returned = "returned"
    cancelled = "cancelled"
    escalated = "escalated"


TERMINAL_STATUSES = frozenset({
    WorkflowStatus.approved,
    WorkflowStatus.rejected,
    WorkflowStatus.cancelled,
})

# Statuses in which a step is open for approver action
ACTIVE_STATUSES = frozenset({
    WorkflowStatus.pending,
    WorkflowStatus.in_progress,
    WorkflowStatus.escalated,
})


class StepAction(str, enum.Enum):
    approved = "approved"
    rejected = "rejected"
    returned = "returned"
    skipped = "skipped"
    escalated = "escalated"
    delegated = "delegated"
    reassigned = "reassigned"
    resubmitted = "resubmitted"
    cancelled = "cancelled"


SYSTEM_ACTOR = "system"


class WorkflowInstance(Base, UUIDMixin, TimestampMixin):
    """The live routing of one concrete request.

    ``status`` is a cached projection of ``step_history``; the workflow
    service re-derives and compares it on every write.
    """

    __tablename__ = "workflow_instances"

    reference_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    reference_type: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    requester_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    attributes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    configuration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("tier_configurations.id"), nullable=False, index=True
    )
    configuration_version: Mapped[int] = mapped_column(Integer, nullable=False)
    tier_plan: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default=WorkflowStatus.pending.value, index=True)
    cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_step_order: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    current_step_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    step_entered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_target: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    step_history: Mapped[list["WorkflowStepHistory"]] = relationship(
        "WorkflowStepHistory",
        back_populates="instance",
        order_by="WorkflowStepHistory.sequence",
    )
    rejection_history: Mapped[list["RejectionHistoryEntry"]] = relationship(
        "RejectionHistoryEntry",
        back_populates="instance",
        order_by="RejectionHistoryEntry.created_at",
    )

    __mapper_args__ = {"version_id_col": version_id}


class WorkflowStepHistory(Base, UUIDMixin, CreatedAtMixin):
    """One recorded transition. Append-only; sole source of truth for status."""

    __tablename__ = "workflow_step_history"
    __table_args__ = (UniqueConstraint("instance_id", "sequence", name="uq_workflow_step_history_sequence"),)

    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("workflow_instances.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    step_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tier_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    action_by: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    approver_slot_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_proxy_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_approver_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    delegation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    is_system_action: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completes_workflow: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    instance: Mapped["WorkflowInstance"] = relationship("WorkflowInstance", back_populates="step_history")


class RejectionHistoryEntry(Base, UUIDMixin, CreatedAtMixin):
    """Why and by whom a request was rejected or returned."""

    __tablename__ = "rejection_history"

    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("workflow_instances.id"), nullable=False, index=True
    )
    cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    step_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tier_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rejected_by: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    returned_to_requestor: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    previous_status: Mapped[str] = mapped_column(String(50), nullable=False)
    is_proxy_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_approver_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    instance: Mapped["WorkflowInstance"] = relationship("WorkflowInstance", back_populates="rejection_history")
