"""Pydantic schemas for delegation rules, their audit trail and proxy approvals."""
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from approval_routing.models.delegation import DelegationStatus, DelegationType
from approval_routing.models.tier_configuration import WorkflowCategory


class DelegationLimits(BaseModel):
    max_approval_amount: Decimal | None = Field(default=None, gt=0)
    max_approvals_per_day: int | None = Field(default=None, ge=1)
    exclude_categories: list[WorkflowCategory] = Field(default_factory=list)
    max_tier_level: int | None = Field(default=None, ge=1, le=5)
    allow_re_delegation: bool = True
    exclude_high_priority: bool = False
    restrict_to_same_department: bool = False
    require_justification_above: Decimal | None = Field(default=None, gt=0)


# ─── Delegation rule schemas ───

class DelegationIn(BaseModel):
    from_user_id: str | None = None  # defaults to the caller
    to_user_id: str = Field(min_length=1)
    start_date: date
    end_date: date
    delegation_type: DelegationType = DelegationType.full
    workflow_categories: list[WorkflowCategory] = Field(default_factory=list)
    limits: DelegationLimits = Field(default_factory=DelegationLimits)
    reason: str | None = None

    @model_validator(mode="after")
    def _scope(self) -> "DelegationIn":
        if self.delegation_type == DelegationType.specific and not self.workflow_categories:
            raise ValueError("a specific delegation must name at least one workflow category")
        return self


class DelegationRevokeIn(BaseModel):
    reason: str = Field(min_length=1)


class DelegationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    from_user_id: str
    to_user_id: str
    start_date: date
    end_date: date
    delegation_type: str
    workflow_categories: list[str]
    limits: DelegationLimits
    reason: str | None
    status: DelegationStatus
    revoked_at: datetime | None
    revoke_reason: str | None
    revoked_by: str | None
    created_by: str | None
    created_at: datetime


class DelegationCreateOut(BaseModel):
    delegation: DelegationOut
    warnings: list[str] = Field(default_factory=list)
    conflicting_ids: list[uuid.UUID] = Field(default_factory=list)


# ─── Limit checks and effective approver ───

class LimitCheckIn(BaseModel):
    delegation_id: uuid.UUID
    amount: Decimal | None = None
    category: WorkflowCategory | None = None
    tier_level: int | None = Field(default=None, ge=1, le=5)
    urgency: str | None = None
    department: str | None = None


class LimitCheckResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class EffectiveApproverOut(BaseModel):
    nominal_id: str
    effective_id: str
    delegation_id: uuid.UUID | None = None
    bypass_reasons: list[str] = Field(default_factory=list)


# ─── Audit / proxy ───

class DelegationAuditOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    delegation_id: uuid.UUID
    action: str
    actor_id: str
    instance_id: uuid.UUID | None
    details: dict[str, Any]
    created_at: datetime


class ProxyApprovalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    instance_id: uuid.UUID
    step_id: str | None
    delegation_id: uuid.UUID
    original_approver_id: str
    proxy_approver_id: str
    action: str
    tier_level: int | None
    category: str
    amount: Decimal | None
    comments: str | None
    acted_at: datetime


class DelegationStatsOut(BaseModel):
    total: int
    by_status: dict[str, int]
    proxy_actions: int
    proxy_actions_by_action: dict[str, int]
