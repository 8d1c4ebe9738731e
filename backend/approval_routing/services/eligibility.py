"""Approver eligibility: who may act on a step right now.

Nominal approvers come from the tier's ``ApproverSource`` slots, filtered by
each slot's ``ApproverLimit``, then passed through the delegation registry so
the returned user is the one who is actually expected to act.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, Sequence

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from approval_routing.core.clock import as_utc
from approval_routing.models.delegation import DelegationRule
from approval_routing.models.workflow import StepAction, WorkflowStepHistory
from approval_routing.schemas.tiers import ApprovalTier, TierApprover
from approval_routing.schemas.workflow import RequestContext
from approval_routing.services.approver_sources import source_for
from approval_routing.services.delegation import DelegationRegistry
from approval_routing.services.directory import IdentityDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EligibleApprover:
    user_id: str
    nominal_id: str
    slot_id: str | None
    is_required: bool
    # the rule held by the acting user; ``chain`` is every hop from the nominal approver
    delegation: DelegationRule | None = None
    chain: tuple[DelegationRule, ...] = ()

    @property
    def is_proxy(self) -> bool:
        return self.user_id != self.nominal_id


# ─── Tier satisfaction (pure) ───

def required_slot_ids(tier: ApprovalTier) -> set[str]:
    """Slots an AND tier needs; every slot when none is marked required."""
    required = {a.id for a in tier.approvers if a.is_required}
    return required or {a.id for a in tier.approvers}


def is_tier_satisfied(
    tier: ApprovalTier,
    approvals: Sequence[WorkflowStepHistory],
    escalation_target: dict | None = None,
) -> bool:
    """Whether the approvals recorded on the current step complete the tier.

    OR tiers need one approval. AND tiers need every required slot credited,
    escalated or not. A step escalated to a named user or role is handed to
    them outright, so one approval from them is enough.
    """
    if not approvals:
        return False
    if escalation_target and escalation_target.get("type") in ("user", "role"):
        return True
    if not tier.require_all_approvers:
        return True
    credited = {a.approver_slot_id for a in approvals if a.approver_slot_id}
    return required_slot_ids(tier) <= credited


def next_sequential_slot(tier: ApprovalTier, approvals: Sequence[WorkflowStepHistory]) -> TierApprover | None:
    """First slot, in approver order, that has not been credited yet."""
    credited = {a.approver_slot_id for a in approvals if a.approver_slot_id}
    for approver in sorted(tier.approvers, key=lambda a: a.order):
        if approver.id not in credited:
            return approver
    return None


# ─── Resolver ───

class EligibilityResolver:

    def __init__(
        self,
        db: Session,
        directory: IdentityDirectory,
        registry: DelegationRegistry | None = None,
    ) -> None:
        self.db = db
        self.directory = directory
        self.registry = registry or DelegationRegistry(db, directory)

    def approvals_today(self, user_id: str, at: datetime) -> int:
        """Approvals recorded by or on behalf of ``user_id`` on the UTC day of ``at``."""
        start = datetime.combine(as_utc(at).date(), time.min, tzinfo=timezone.utc)
        return self.db.execute(
            select(func.count(WorkflowStepHistory.id)).where(
                WorkflowStepHistory.action == StepAction.approved.value,
                WorkflowStepHistory.created_at >= start,
                WorkflowStepHistory.created_at < start + timedelta(days=1),
                or_(
                    and_(WorkflowStepHistory.action_by == user_id, WorkflowStepHistory.is_proxy_approval.is_(False)),
                    WorkflowStepHistory.original_approver_id == user_id,
                ),
            )
        ).scalar_one()

    def _passes_limits(self, approver: TierApprover, user_id: str, ctx: RequestContext, at: datetime) -> bool:
        limits = approver.limits
        if user_id == ctx.requester_id and not limits.can_approve_own_requests:
            return False
        if not limits.can_approve_direct_reports and self.directory.manager_of(ctx.requester_id) == user_id:
            return False
        if ctx.amount is not None:
            if limits.min_approval_amount is not None and ctx.amount < limits.min_approval_amount:
                return False
            if limits.max_approval_amount is not None and ctx.amount > limits.max_approval_amount:
                return False
        if limits.max_approvals_per_day is not None:
            if self.approvals_today(user_id, at) >= limits.max_approvals_per_day:
                return False
        return True

    def nominal_approvers(
        self, tier: ApprovalTier, ctx: RequestContext, at: datetime
    ) -> list[tuple[TierApprover, str]]:
        """(slot, user) pairs named by the tier after approver limits, in slot order."""
        pairs: list[tuple[TierApprover, str]] = []
        for approver in sorted(tier.approvers, key=lambda a: a.order):
            for user_id in source_for(approver.type).resolve(approver, ctx, self.directory):
                if self._passes_limits(approver, user_id, ctx, at):
                    pairs.append((approver, user_id))
        return pairs

    def _substitute(
        self,
        pairs: Iterable[tuple[TierApprover | None, str]],
        ctx: RequestContext,
        at: datetime,
    ) -> list[EligibleApprover]:
        result: list[EligibleApprover] = []
        seen: set[tuple[str, str | None]] = set()
        for approver, nominal_id in pairs:
            sub = self.registry.resolve(nominal_id, at, ctx)
            effective_id = sub.effective_id
            # a nominal requester kept by can_approve_own_requests stays; a delegate never may be the requester
            if effective_id == ctx.requester_id and effective_id != nominal_id:
                continue
            slot_id = approver.id if approver else None
            key = (effective_id, slot_id)
            if key in seen:
                continue
            seen.add(key)
            result.append(EligibleApprover(
                user_id=effective_id,
                nominal_id=nominal_id,
                slot_id=slot_id,
                is_required=bool(approver and approver.is_required),
                delegation=sub.chain[-1] if sub.chain else None,
                chain=sub.chain,
            ))
        return result

    def eligible(
        self,
        tier: ApprovalTier,
        ctx: RequestContext,
        at: datetime,
        approvals: Sequence[WorkflowStepHistory] = (),
        escalation_target: dict | None = None,
    ) -> list[EligibleApprover]:
        """Users allowed to act on the current step of ``tier``.

        Args:
            tier: The tier of the active step.
            ctx: Request context for that tier (``tier_level`` set).
            at: The transition's single clock reading.
            approvals: Approvals already recorded on this step; their actors
                are excluded and, for AND tiers, their slots are closed.
            escalation_target: When the step is escalated to a user or role,
                those users replace the tier's approvers. Any other target
                keeps the AND and sequential gating of ``tier``.
        """
        done_by = {a.action_by for a in approvals}

        if escalation_target and escalation_target.get("type") in ("user", "role"):
            if escalation_target["type"] == "user":
                nominals = [escalation_target["user_id"]]
            else:
                nominals = self.directory.users_with_role(escalation_target["role"])
            pairs = [(None, u) for u in nominals if u != ctx.requester_id]
            return [e for e in self._substitute(pairs, ctx, at) if e.user_id not in done_by]

        pairs = self.nominal_approvers(tier, ctx, at)
        credited = {a.approver_slot_id for a in approvals if a.approver_slot_id}
        if tier.require_all_approvers:
            pairs = [(a, u) for a, u in pairs if a.id not in credited]
        if tier.sequential:
            nxt = next_sequential_slot(tier, approvals)
            pairs = [(a, u) for a, u in pairs if nxt is not None and a.id == nxt.id]

        return [e for e in self._substitute(pairs, ctx, at) if e.user_id not in done_by]

    def slot_for(self, actor_id: str, eligible: Sequence[EligibleApprover]) -> EligibleApprover | None:
        """The first eligible entry ``actor_id`` fills, in slot order."""
        return next((e for e in eligible if e.user_id == actor_id), None)
