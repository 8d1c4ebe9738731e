"""Versioned tier configuration model."""
import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from approval_routing.db.base import Base, TimestampMixin, UUIDMixin


class WorkflowCategory(str, enum.Enum):
    purchase = "purchase"
    time_off = "time_off"
    permit = "permit"
    expense = "expense"
    contract = "contract"
    custom = "custom"


class TierConfiguration(Base, UUIDMixin, TimestampMixin):
    """A named, versioned bundle of approval tiers for one workflow category.

    ``tiers`` holds the validated ApprovalTier snapshot as JSON. Once
    ``referenced_at`` is set the row is frozen; revisions are new rows sharing
    ``lineage_id`` with ``version`` incremented.
    """

    __tablename__ = "tier_configurations"
    __table_args__ = (
        Index(
            "uq_tier_configurations_default_per_category",
            "category",
            unique=True,
            postgresql_where=text("is_default AND is_active"),
            sqlite_where=text("is_default = 1 AND is_active = 1"),
        ),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    lineage_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    supersedes_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cumulative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    tiers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    referenced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
