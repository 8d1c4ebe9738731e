"""Pydantic schemas for approval tiers and tier configurations.

Tiers are value objects: they are validated here once, when a configuration is
created or loaded, and stored as a JSON snapshot on the configuration row. The
tier resolver never sees an unknown trigger type or a mistyped threshold value.
"""
import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from approval_routing.models.tier_configuration import WorkflowCategory


class TriggerType(str, enum.Enum):
    amount = "amount"
    urgency = "urgency"
    category = "category"
    department = "department"


class ThresholdOperator(str, enum.Enum):
    equals = "equals"
    not_equals = "not_equals"
    greater_than = "greater_than"
    less_than = "less_than"
    between = "between"
    in_list = "in_list"


class ApproverType(str, enum.Enum):
    user = "user"
    role = "role"
    manager = "manager"
    department_head = "department_head"
    executive = "executive"
    dynamic = "dynamic"


# ─── Threshold values (tagged) ───

class NumberValue(BaseModel):
    kind: Literal["number"] = "number"
    value: Decimal


class NumberRange(BaseModel):
    kind: Literal["range"] = "range"
    low: Decimal
    high: Decimal

    @model_validator(mode="after")
    def _ordered(self) -> "NumberRange":
        if self.low > self.high:
            raise ValueError(f"range low {self.low} is greater than high {self.high}")
        return self


class TextValue(BaseModel):
    kind: Literal["text"] = "text"
    value: str = Field(min_length=1)


class TextSet(BaseModel):
    kind: Literal["text_set"] = "text_set"
    values: list[str] = Field(min_length=1)


ThresholdValue = Annotated[
    Union[NumberValue, NumberRange, TextValue, TextSet],
    Field(discriminator="kind"),
]

# Which value kinds each operator accepts
OPERATOR_VALUE_KINDS: dict[ThresholdOperator, frozenset[str]] = {
    ThresholdOperator.equals: frozenset({"number", "text"}),
    ThresholdOperator.not_equals: frozenset({"number", "text"}),
    ThresholdOperator.greater_than: frozenset({"number"}),
    ThresholdOperator.less_than: frozenset({"number"}),
    ThresholdOperator.between: frozenset({"range"}),
    ThresholdOperator.in_list: frozenset({"text_set"}),
}

# Which value kinds each trigger compares against
TRIGGER_VALUE_KINDS: dict[TriggerType, frozenset[str]] = {
    TriggerType.amount: frozenset({"number", "range"}),
    TriggerType.urgency: frozenset({"text", "text_set"}),
    TriggerType.category: frozenset({"text", "text_set"}),
    TriggerType.department: frozenset({"text", "text_set"}),
}


class TierThreshold(BaseModel):
    trigger_type: TriggerType
    operator: ThresholdOperator
    value: ThresholdValue

    @model_validator(mode="after")
    def _compatible(self) -> "TierThreshold":
        kind = self.value.kind
        if kind not in OPERATOR_VALUE_KINDS[self.operator]:
            raise ValueError(f"operator {self.operator.value!r} does not accept a {kind} value")
        if kind not in TRIGGER_VALUE_KINDS[self.trigger_type]:
            raise ValueError(f"trigger {self.trigger_type.value!r} does not accept a {kind} value")
        return self


# ─── Approvers ───

class ApproverLimit(BaseModel):
    can_approve_own_requests: bool = False
    can_approve_direct_reports: bool = True
    min_approval_amount: Decimal | None = None
    max_approval_amount: Decimal | None = None
    max_approvals_per_day: int | None = Field(default=None, ge=1)


class TierApprover(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    type: ApproverType
    user_id: str | None = None
    role: str | None = None
    attribute: str | None = None  # dynamic: request attribute holding a user id
    order: int = 0
    is_required: bool = False
    limits: ApproverLimit = Field(default_factory=ApproverLimit)

    @model_validator(mode="after")
    def _target_present(self) -> "TierApprover":
        if self.type == ApproverType.user and not self.user_id:
            raise ValueError("user approver requires user_id")
        if self.type == ApproverType.role and not self.role:
            raise ValueError("role approver requires role")
        if self.type == ApproverType.dynamic and not self.attribute:
            raise ValueError("dynamic approver requires attribute")
        return self


class EscalationRule(BaseModel):
    timeout_hours: float | None = Field(default=None, gt=0)
    escalate_to_user_id: str | None = None
    escalate_to_role: str | None = None
    escalate_to_tier_level: int | None = Field(default=None, ge=1, le=5)
    reminder_interval_hours: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _single_target(self) -> "EscalationRule":
        targets = [self.escalate_to_user_id, self.escalate_to_role, self.escalate_to_tier_level]
        if sum(t is not None for t in targets) > 1:
            raise ValueError("escalation may name at most one target")
        return self

    @property
    def has_target(self) -> bool:
        return any(
            t is not None
            for t in (self.escalate_to_user_id, self.escalate_to_role, self.escalate_to_tier_level)
        )


class ApprovalTier(BaseModel):
    level: int = Field(ge=1, le=5)
    name: str = ""
    category: WorkflowCategory | None = None
    is_active: bool = True
    thresholds: list[TierThreshold] = Field(default_factory=list)
    approvers: list[TierApprover] = Field(default_factory=list)
    require_all_approvers: bool = False
    sequential: bool = False
    auto_escalate_hours: float | None = Field(default=None, gt=0)
    auto_approve_on_timeout: bool = False
    escalation: EscalationRule | None = None
    notify_on_escalation: bool = True
    max_approval_days: int | None = Field(default=None, ge=1)

    @field_validator("approvers")
    @classmethod
    def _unique_slot_ids(cls, approvers: list[TierApprover]) -> list[TierApprover]:
        ids = [a.id for a in approvers]
        if len(ids) != len(set(ids)):
            raise ValueError("approver ids must be unique within a tier")
        return approvers

    @property
    def escalation_timeout_hours(self) -> float | None:
        if self.escalation and self.escalation.timeout_hours:
            return self.escalation.timeout_hours
        if self.auto_escalate_hours:
            return self.auto_escalate_hours
        # overdue steps escalate once the approval window is spent
        return float(self.max_approval_days * 24) if self.max_approval_days else None

    @property
    def reminder_interval_hours(self) -> float | None:
        return self.escalation.reminder_interval_hours if self.escalation else None

    def approver(self, slot_id: str) -> TierApprover | None:
        return next((a for a in self.approvers if a.id == slot_id), None)


def check_tier_set(tiers: list[ApprovalTier], category: WorkflowCategory | None = None) -> list[ApprovalTier]:
    """Validate a tier list as a whole and return it sorted by level."""
    levels = [t.level for t in tiers]
    if len(levels) != len(set(levels)):
        raise ValueError(f"tier levels must be unique, got {sorted(levels)}")
    ordered = sorted(tiers, key=lambda t: t.level)
    known = set(levels)
    for tier in ordered:
        if tier.is_active and not tier.approvers:
            raise ValueError(f"active tier {tier.level} has no approvers")
        if category is not None and tier.category is not None and tier.category != category:
            raise ValueError(f"tier {tier.level} has category {tier.category.value}, expected {category.value}")
        target = tier.escalation.escalate_to_tier_level if tier.escalation else None
        if target is not None and (target <= tier.level or target not in known):
            raise ValueError(f"tier {tier.level} escalates to unknown or lower tier {target}")
    return ordered


class TierConfigSnapshot(BaseModel):
    """Immutable view of one configuration version, as the resolver sees it."""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID | None = None
    name: str = ""
    category: WorkflowCategory
    version: int = 1
    cumulative: bool = True
    tiers: list[ApprovalTier]

    @field_validator("tiers")
    @classmethod
    def _check_tiers(cls, tiers: list[ApprovalTier], info: ValidationInfo) -> list[ApprovalTier]:
        return check_tier_set(tiers, info.data.get("category"))

    def tier(self, level: int) -> ApprovalTier | None:
        return next((t for t in self.tiers if t.level == level), None)


# ─── Tier configuration API schemas ───

class TierConfigurationIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    category: WorkflowCategory
    is_default: bool = False
    cumulative: bool = True
    tiers: list[ApprovalTier] = Field(min_length=1)

    @field_validator("tiers")
    @classmethod
    def _check_tiers(cls, tiers: list[ApprovalTier], info: ValidationInfo) -> list[ApprovalTier]:
        return check_tier_set(tiers, info.data.get("category"))


class TierConfigurationRevise(BaseModel):
    base_version: int = Field(ge=1)
    name: str | None = None
    description: str | None = None
    cumulative: bool | None = None
    tiers: list[ApprovalTier] | None = None


class TierConfigurationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    category: str
    version: int
    lineage_id: uuid.UUID
    supersedes_id: uuid.UUID | None
    is_default: bool
    is_active: bool
    cumulative: bool
    tiers: list[ApprovalTier]
    referenced_at: datetime | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
