"""Workflow routing and decision endpoints.

Mutations go through the sync ``WorkflowEngine`` (shared with the Celery
workers) and are retried only on lock timeouts and stale/operational database
errors. The plain instance read uses the async session.
"""
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from approval_routing.core.clock import Clock
from approval_routing.core.deps import Actor, get_clock, get_current_actor
from approval_routing.db.session import get_session, get_sync_session
from approval_routing.models.workflow import WorkflowInstance
from approval_routing.schemas.delegation import DelegationAuditOut, ProxyApprovalOut
from approval_routing.schemas.workflow import (
    AuditTrailOut,
    AvailableActionsOut,
    CancelIn,
    DecisionIn,
    EligibleApproverOut,
    EscalateIn,
    RejectionOut,
    ResubmitIn,
    RouteRequestIn,
    RouteResponse,
    StepHistoryOut,
    WorkflowInstanceOut,
    WorkflowStatsOut,
)
from approval_routing.services.directory import IdentityDirectory, get_directory
from approval_routing.services.locking import run_with_backoff
from approval_routing.services.workflow import WorkflowEngine

router = APIRouter()


def get_engine(
    db: Annotated[Session, Depends(get_sync_session)],
    clock: Annotated[Clock, Depends(get_clock)],
    directory: Annotated[IdentityDirectory, Depends(get_directory)],
) -> WorkflowEngine:
    return WorkflowEngine(db, directory, clock=clock)


EngineDep = Annotated[WorkflowEngine, Depends(get_engine)]
ActorDep = Annotated[Actor, Depends(get_current_actor)]


# ─── Route ───

@router.post(
    "",
    response_model=RouteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Route a request through its approval tiers",
)
def route_request(body: RouteRequestIn, engine: EngineDep, actor: ActorDep):
    requester_id = body.requester_id or actor.id
    if requester_id != actor.id and not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only an administrator can submit a request on someone else's behalf.",
        )
    instance = engine.route(body, requester_id)
    return RouteResponse(
        id=instance.id,
        status=instance.status,
        current_step_id=instance.current_step_id,
        tiers=[int(t["level"]) for t in instance.tier_plan],
    )


@router.get("/stats", response_model=WorkflowStatsOut, summary="Workflow counts and timings")
def workflow_stats(engine: EngineDep, actor: ActorDep, category: str | None = Query(default=None)):
    return WorkflowStatsOut(**engine.workflow_stats(category))


# ─── Reads ───

@router.get("/{instance_id}", response_model=WorkflowInstanceOut, summary="Get a workflow instance")
async def get_workflow(
    instance_id: uuid.UUID,
    db: Annotated[AsyncSession, Depends(get_session)],
    actor: ActorDep,
):
    instance = await db.get(WorkflowInstance, instance_id)
    if instance is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workflow instance not found.")
    return WorkflowInstanceOut.model_validate(instance)


@router.get(
    "/{instance_id}/eligible-approvers",
    response_model=list[EligibleApproverOut],
    summary="Who may act on the current step",
)
def eligible_approvers(instance_id: uuid.UUID, engine: EngineDep, actor: ActorDep):
    return [
        EligibleApproverOut(
            user_id=e.user_id,
            nominal_id=e.nominal_id,
            slot_id=e.slot_id,
            is_required=e.is_required,
            delegation_id=e.delegation.id if e.is_proxy and e.delegation else None,
            is_proxy=e.is_proxy,
        )
        for e in engine.eligible_approvers(instance_id)
    ]


@router.get(
    "/{instance_id}/available-actions",
    response_model=AvailableActionsOut,
    summary="Actions the caller can take on this request",
)
def available_actions(instance_id: uuid.UUID, engine: EngineDep, actor: ActorDep):
    actions = engine.available_actions(instance_id, actor.id, is_admin=actor.is_admin)
    instance = engine.get_instance(instance_id)
    return AvailableActionsOut(instance_id=instance.id, status=instance.status, actions=actions)


@router.get("/{instance_id}/audit", response_model=AuditTrailOut, summary="Full history of a request")
def audit_trail(instance_id: uuid.UUID, engine: EngineDep, actor: ActorDep):
    trail = engine.audit_trail(instance_id)
    return AuditTrailOut(
        instance_id=instance_id,
        steps=[StepHistoryOut.model_validate(s) for s in trail["steps"]],
        rejections=[RejectionOut.model_validate(r) for r in trail["rejections"]],
        proxy_approvals=[ProxyApprovalOut.model_validate(p) for p in trail["proxy_approvals"]],
        delegation_events=[DelegationAuditOut.model_validate(e) for e in trail["delegation_events"]],
    )


# ─── Transitions ───

@router.post(
    "/{instance_id}/decisions",
    response_model=WorkflowInstanceOut,
    summary="Approve, reject or return the current step",
)
def decide(instance_id: uuid.UUID, body: DecisionIn, engine: EngineDep, actor: ActorDep):
    instance = run_with_backoff(
        lambda: engine.decide(instance_id, actor.id, body.step_id, body.action, body.reason),
        on_retry=engine.db.rollback,
    )
    return WorkflowInstanceOut.model_validate(instance)


@router.post("/{instance_id}/cancel", response_model=WorkflowInstanceOut, summary="Cancel a request")
def cancel(instance_id: uuid.UUID, body: CancelIn, engine: EngineDep, actor: ActorDep):
    instance = run_with_backoff(
        lambda: engine.cancel(instance_id, actor.id, is_admin=actor.is_admin, reason=body.reason),
        on_retry=engine.db.rollback,
    )
    return WorkflowInstanceOut.model_validate(instance)


@router.post(
    "/{instance_id}/resubmit",
    response_model=WorkflowInstanceOut,
    summary="Resubmit a returned request with changes",
)
def resubmit(instance_id: uuid.UUID, body: ResubmitIn, engine: EngineDep, actor: ActorDep):
    instance = run_with_backoff(
        lambda: engine.resubmit(instance_id, actor.id, body.changes, comments=body.comments),
        on_retry=engine.db.rollback,
    )
    return WorkflowInstanceOut.model_validate(instance)


@router.post(
    "/{instance_id}/escalate",
    response_model=WorkflowInstanceOut,
    summary="Escalate the current step manually",
)
def escalate(instance_id: uuid.UUID, body: EscalateIn, engine: EngineDep, actor: ActorDep):
    run_with_backoff(
        lambda: engine.escalate(
            instance_id, step_id=body.step_id, actor_id=actor.id, reason=body.reason, is_admin=actor.is_admin,
        ),
        on_retry=engine.db.rollback,
    )
    return WorkflowInstanceOut.model_validate(engine.get_instance(instance_id))
