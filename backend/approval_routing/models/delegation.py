import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from approval_routing.db.base import Base, CreatedAtMixin, TimestampMixin, UUIDMixin


class DelegationType(str, enum.Enum):
    full = "full"
    specific = "specific"  # scoped to workflow_categories
    temporary = "temporary"


class DelegationStatus(str, enum.Enum):
    active = "active"
    scheduled = "scheduled"
    expired = "expired"
    revoked = "revoked"


class DelegationAuditAction(str, enum.Enum):
    created = "created"
    revoked = "revoked"
    expired = "expired"
    approval_used = "approval_used"


class DelegationRule(Base, UUIDMixin, TimestampMixin):
    """Time-bounded transfer of approval authority from one user to another.

    Status is never stored; it is computed from the window and ``revoked_at``
    at the caller's evaluation time.
    """

    __tablename__ = "delegation_rules"

    from_user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    to_user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)  # inclusive, to end of day UTC
    delegation_type: Mapped[str] = mapped_column(String(20), nullable=False, default=DelegationType.full.value)
    workflow_categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    limits: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expired_recorded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)


class DelegationAuditEntry(Base, UUIDMixin, CreatedAtMixin):
    """Append-only lifecycle and usage log for a delegation."""

    __tablename__ = "delegation_audit"

    delegation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("delegation_rules.id"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    instance_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)


class ProxyApprovalRecord(Base, UUIDMixin, CreatedAtMixin):
    """Immutable record of a decision taken by a delegate on someone's behalf."""

    __tablename__ = "proxy_approvals"

    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("workflow_instances.id"), nullable=False, index=True
    )
    step_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    delegation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("delegation_rules.id"), nullable=False, index=True
    )
    original_approver_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    proxy_approver_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)  # approved, rejected, returned
    tier_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    acted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
