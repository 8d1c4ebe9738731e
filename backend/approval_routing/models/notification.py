import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from approval_routing.db.base import Base, CreatedAtMixin, UUIDMixin


class NotificationType(str, enum.Enum):
    step_activated = "step_activated"
    escalation_fired = "escalation_fired"
    request_rejected = "request_rejected"
    request_returned = "request_returned"
    approval_complete = "approval_complete"
    request_cancelled = "request_cancelled"
    approval_reminder = "approval_reminder"
    delegation_assigned = "delegation_assigned"
    delegation_revoked = "delegation_revoked"


class NotificationIntent(Base, UUIDMixin, CreatedAtMixin):
    """Outbox row; delivery is owned by an external notifier."""

    __tablename__ = "notification_intents"

    recipient_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    instance_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True, index=True)
    step_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
