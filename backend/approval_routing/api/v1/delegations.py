"""Delegation rule endpoints: create, revoke, list, limit checks and proxy history."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from approval_routing.core.clock import Clock
from approval_routing.core.deps import Actor, get_clock, get_current_actor
from approval_routing.db.session import get_sync_session
from approval_routing.models.delegation import DelegationRule, DelegationStatus
from approval_routing.models.tier_configuration import WorkflowCategory
from approval_routing.schemas.delegation import (
    DelegationAuditOut,
    DelegationCreateOut,
    DelegationIn,
    DelegationOut,
    DelegationRevokeIn,
    DelegationStatsOut,
    EffectiveApproverOut,
    LimitCheckIn,
    LimitCheckResult,
    ProxyApprovalOut,
)
from approval_routing.schemas.workflow import RequestContext
from approval_routing.services.delegation import DelegationRegistry, compute_status, limits_of
from approval_routing.services.directory import IdentityDirectory, get_directory

router = APIRouter()


def get_registry(
    db: Annotated[Session, Depends(get_sync_session)],
    directory: Annotated[IdentityDirectory, Depends(get_directory)],
) -> DelegationRegistry:
    return DelegationRegistry(db, directory)


RegistryDep = Annotated[DelegationRegistry, Depends(get_registry)]
ActorDep = Annotated[Actor, Depends(get_current_actor)]
ClockDep = Annotated[Clock, Depends(get_clock)]


def delegation_out(rule: DelegationRule, at: datetime) -> DelegationOut:
    return DelegationOut(
        id=rule.id,
        from_user_id=rule.from_user_id,
        to_user_id=rule.to_user_id,
        start_date=rule.start_date,
        end_date=rule.end_date,
        delegation_type=rule.delegation_type,
        workflow_categories=rule.workflow_categories or [],
        limits=limits_of(rule),
        reason=rule.reason,
        status=compute_status(rule, at),
        revoked_at=rule.revoked_at,
        revoke_reason=rule.revoke_reason,
        revoked_by=rule.revoked_by,
        created_by=rule.created_by,
        created_at=rule.created_at,
    )


def _ensure_owner_or_admin(actor: Actor, *user_ids: str | None) -> None:
    if actor.is_admin or actor.id in user_ids:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You can only manage your own delegations.",
    )


# ─── Lifecycle ───

@router.post(
    "",
    response_model=DelegationCreateOut,
    status_code=status.HTTP_201_CREATED,
    summary="Delegate approval authority for a date window",
)
def create_delegation(body: DelegationIn, registry: RegistryDep, actor: ActorDep, clock: ClockDep):
    _ensure_owner_or_admin(actor, body.from_user_id or actor.id)
    at = clock.now()
    result = registry.create(body, actor.id, at)
    registry.db.commit()
    return DelegationCreateOut(
        delegation=delegation_out(result.rule, at),
        warnings=result.warnings,
        conflicting_ids=[r.id for r in result.conflicts],
    )


@router.post("/{delegation_id}/revoke", response_model=DelegationOut, summary="Revoke a delegation")
def revoke_delegation(
    delegation_id: uuid.UUID,
    body: DelegationRevokeIn,
    registry: RegistryDep,
    actor: ActorDep,
    clock: ClockDep,
):
    rule = registry.get(delegation_id)
    _ensure_owner_or_admin(actor, rule.from_user_id, rule.created_by)
    at = clock.now()
    rule = registry.revoke(delegation_id, actor.id, body.reason, at)
    registry.db.commit()
    return delegation_out(rule, at)


# ─── Queries ───

@router.get("", response_model=list[DelegationOut], summary="List delegations with computed status")
def list_delegations(
    registry: RegistryDep,
    actor: ActorDep,
    clock: ClockDep,
    from_user_id: str | None = Query(default=None),
    to_user_id: str | None = Query(default=None),
    status_filter: DelegationStatus | None = Query(default=None, alias="status"),
):
    if not actor.is_admin and actor.id not in (from_user_id, to_user_id):
        from_user_id = actor.id
    at = clock.now()
    return [delegation_out(rule, at) for rule, _ in registry.list_rules(at, from_user_id, to_user_id, status_filter)]


@router.post("/validate", response_model=LimitCheckResult, summary="Check a request against a delegation's limits")
def validate_limits(body: LimitCheckIn, registry: RegistryDep, actor: ActorDep, clock: ClockDep):
    rule = registry.get(body.delegation_id)
    ctx = RequestContext(
        requester_id="",
        category=body.category.value if body.category else "",
        amount=body.amount,
        urgency=body.urgency,
        department=body.department,
        tier_level=body.tier_level,
    )
    return registry.validate_limits(rule, ctx, clock.now())


@router.get("/effective", response_model=EffectiveApproverOut, summary="Who acts for a user right now")
def effective_approver(
    registry: RegistryDep,
    actor: ActorDep,
    clock: ClockDep,
    user_id: str = Query(...),
    category: WorkflowCategory = Query(...),
    requester_id: str = Query(default=""),
    amount: Decimal | None = Query(default=None),
    tier_level: int | None = Query(default=None, ge=1, le=5),
    urgency: str | None = Query(default=None),
    department: str | None = Query(default=None),
):
    ctx = RequestContext(
        requester_id=requester_id,
        category=category.value,
        amount=amount,
        urgency=urgency,
        department=department,
        tier_level=tier_level,
    )
    at = clock.now()
    # lookups write no approval_used entry
    effective_id, rule = registry.effective_approver(user_id, at, ctx, emit_audit=False)
    return EffectiveApproverOut(
        nominal_id=user_id,
        effective_id=effective_id,
        delegation_id=rule.id if rule else None,
        bypass_reasons=registry.explain_bypass(user_id, at, ctx),
    )


@router.get("/proxy-approvals", response_model=list[ProxyApprovalOut], summary="Decisions taken by delegates")
def proxy_approvals(
    registry: RegistryDep,
    actor: ActorDep,
    proxy_approver_id: str | None = Query(default=None),
    original_approver_id: str | None = Query(default=None),
    delegation_id: uuid.UUID | None = Query(default=None),
):
    if not actor.is_admin and actor.id not in (proxy_approver_id, original_approver_id):
        proxy_approver_id = actor.id
    records = registry.proxy_approvals(proxy_approver_id, original_approver_id, delegation_id)
    return [ProxyApprovalOut.model_validate(r) for r in records]


@router.get("/stats", response_model=DelegationStatsOut, summary="Delegation counts per status")
def delegation_stats(registry: RegistryDep, actor: ActorDep, clock: ClockDep):
    user_id = None if actor.is_admin else actor.id
    return DelegationStatsOut(**registry.stats(clock.now(), user_id=user_id))


@router.get("/{delegation_id}/audit", response_model=list[DelegationAuditOut], summary="Delegation audit trail")
def delegation_audit(delegation_id: uuid.UUID, registry: RegistryDep, actor: ActorDep):
    rule = registry.get(delegation_id)
    _ensure_owner_or_admin(actor, rule.from_user_id, rule.to_user_id)
    return [DelegationAuditOut.model_validate(e) for e in registry.audit_entries(delegation_id)]
