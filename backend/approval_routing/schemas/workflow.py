"""Pydantic schemas for routing requests, decisions and workflow read models."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from approval_routing.models.tier_configuration import WorkflowCategory
from approval_routing.schemas.delegation import DelegationAuditOut, ProxyApprovalOut


class RequestAttributes(BaseModel):
    """Typed attributes a tier threshold can compare against.

    Unknown keys are kept (``dynamic`` approvers read user ids from them).
    """

    model_config = ConfigDict(extra="allow")

    amount: Decimal | None = None
    urgency: str | None = None
    category: str | None = None
    department: str | None = None

    def lookup(self, name: str) -> Any:
        return getattr(self, name, None)

    def as_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class RequestContext(BaseModel):
    """What eligibility and delegation checks need to know about a request at one tier."""

    model_config = ConfigDict(frozen=True)

    instance_id: uuid.UUID | None = None
    requester_id: str
    category: str
    amount: Decimal | None = None
    urgency: str | None = None
    department: str | None = None
    tier_level: int | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


# ─── Commands ───

class RouteRequestIn(BaseModel):
    reference_id: str = Field(min_length=1, max_length=255)
    reference_type: str = "request"
    category: WorkflowCategory
    attributes: RequestAttributes = Field(default_factory=RequestAttributes)
    requester_id: str | None = None  # defaults to the caller
    configuration_id: uuid.UUID | None = None  # defaults to the category's default configuration


class DecisionIn(BaseModel):
    step_id: str
    action: Literal["approve", "reject", "return"]
    reason: str | None = None


class CancelIn(BaseModel):
    reason: str | None = None


class ResubmitIn(BaseModel):
    changes: RequestAttributes = Field(default_factory=RequestAttributes)
    comments: str | None = None


class EscalateIn(BaseModel):
    step_id: str | None = None
    reason: str | None = None


# ─── Read models ───

class StepHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    sequence: int
    cycle: int
    step_id: str | None
    step_order: int
    tier_level: int | None
    action: str
    action_by: str
    approver_slot_id: str | None
    is_proxy_approval: bool
    original_approver_id: str | None
    delegation_id: uuid.UUID | None
    is_system_action: bool
    comments: str | None
    created_at: datetime


class RejectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    cycle: int
    step_id: str | None
    tier_level: int | None
    rejected_by: str
    reason: str
    returned_to_requestor: bool
    previous_status: str
    is_proxy_approval: bool
    original_approver_id: str | None
    created_at: datetime


class WorkflowInstanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    reference_id: str
    reference_type: str
    category: str
    requester_id: str
    attributes: dict[str, Any]
    configuration_id: uuid.UUID
    configuration_version: int
    tier_plan: list[dict[str, Any]]
    status: str
    cycle: int
    current_step_order: int
    current_step_id: str | None
    step_entered_at: datetime | None
    escalation_target: dict[str, Any] | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RouteResponse(BaseModel):
    id: uuid.UUID
    status: str
    current_step_id: str | None
    tiers: list[int]


class EligibleApproverOut(BaseModel):
    user_id: str
    nominal_id: str
    slot_id: str | None
    is_required: bool
    delegation_id: uuid.UUID | None = None
    is_proxy: bool = False


class AvailableActionsOut(BaseModel):
    instance_id: uuid.UUID
    status: str
    actions: list[str]


class AuditTrailOut(BaseModel):
    instance_id: uuid.UUID
    steps: list[StepHistoryOut]
    rejections: list[RejectionOut]
    proxy_approvals: list[ProxyApprovalOut]
    delegation_events: list[DelegationAuditOut]


class WorkflowStatsOut(BaseModel):
    total: int
    by_status: dict[str, int]
    pending_by_tier: dict[int, int]
    average_hours_to_completion: float | None
    escalation_rate: float
