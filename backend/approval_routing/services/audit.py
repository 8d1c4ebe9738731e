"""History recorder: append-only writes to the step, rejection and delegation logs.

Callers own the transaction; every writer adds and flushes, nothing here
commits, updates or deletes.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_routing.models.delegation import DelegationAuditEntry, ProxyApprovalRecord
from approval_routing.models.workflow import (
    RejectionHistoryEntry,
    StepAction,
    WorkflowInstance,
    WorkflowStepHistory,
)

logger = logging.getLogger(__name__)


# ─── Writers ───

def record_step(
    db: Session,
    instance: WorkflowInstance,
    action: StepAction,
    action_by: str,
    at: datetime,
    *,
    tier_level: int | None = None,
    approver_slot_id: str | None = None,
    is_proxy_approval: bool = False,
    original_approver_id: str | None = None,
    delegation_id: uuid.UUID | None = None,
    is_system_action: bool = False,
    completes_workflow: bool = False,
    comments: str | None = None,
) -> WorkflowStepHistory:
    """Append one transition to the instance's step history.

    The step id, order and cycle are taken from the instance as it stands
    before the transition is applied, so callers record first and mutate
    the instance afterwards.
    """
    entry = WorkflowStepHistory(
        sequence=len(instance.step_history) + 1,
        cycle=instance.cycle,
        step_id=instance.current_step_id,
        step_order=instance.current_step_order,
        tier_level=tier_level,
        action=action.value,
        action_by=action_by,
        approver_slot_id=approver_slot_id,
        is_proxy_approval=is_proxy_approval,
        original_approver_id=original_approver_id,
        delegation_id=delegation_id,
        is_system_action=is_system_action,
        completes_workflow=completes_workflow,
        comments=comments,
        created_at=at,
    )
    instance.step_history.append(entry)
    db.flush()
    logger.debug("History: instance=%s seq=%d %s by %s", instance.id, entry.sequence, action.value, action_by)
    return entry


def record_rejection(
    db: Session,
    instance: WorkflowInstance,
    rejected_by: str,
    reason: str,
    at: datetime,
    *,
    tier_level: int | None,
    returned_to_requestor: bool,
    is_proxy_approval: bool = False,
    original_approver_id: str | None = None,
    amount: Decimal | None = None,
) -> RejectionHistoryEntry:
    entry = RejectionHistoryEntry(
        cycle=instance.cycle,
        step_id=instance.current_step_id,
        tier_level=tier_level,
        rejected_by=rejected_by,
        reason=reason,
        returned_to_requestor=returned_to_requestor,
        previous_status=instance.status,
        is_proxy_approval=is_proxy_approval,
        original_approver_id=original_approver_id,
        amount=amount,
        created_at=at,
    )
    instance.rejection_history.append(entry)
    db.flush()
    return entry


def record_delegation_event(
    db: Session,
    delegation_id: uuid.UUID,
    action: str,
    actor_id: str,
    at: datetime,
    instance_id: uuid.UUID | None = None,
    details: dict[str, Any] | None = None,
) -> DelegationAuditEntry:
    entry = DelegationAuditEntry(
        delegation_id=delegation_id,
        action=action,
        actor_id=actor_id,
        instance_id=instance_id,
        details=details or {},
        created_at=at,
    )
    db.add(entry)
    db.flush()
    logger.debug("Delegation audit: %s %s by %s", action, delegation_id, actor_id)
    return entry


# ─── Read-only projection ───

def audit_trail(db: Session, instance_id: uuid.UUID) -> dict[str, list]:
    """Everything recorded about one instance, oldest first.

    Includes the delegation audit entries of every delegation that was used
    on the instance, not only those written with the instance id.
    """
    steps = db.execute(
        select(WorkflowStepHistory)
        .where(WorkflowStepHistory.instance_id == instance_id)
        .order_by(WorkflowStepHistory.sequence)
    ).scalars().all()
    rejections = db.execute(
        select(RejectionHistoryEntry)
        .where(RejectionHistoryEntry.instance_id == instance_id)
        .order_by(RejectionHistoryEntry.created_at)
    ).scalars().all()
    proxies = db.execute(
        select(ProxyApprovalRecord)
        .where(ProxyApprovalRecord.instance_id == instance_id)
        .order_by(ProxyApprovalRecord.acted_at)
    ).scalars().all()

    delegation_ids = {s.delegation_id for s in steps if s.delegation_id} | {p.delegation_id for p in proxies}
    events: list[DelegationAuditEntry] = []
    if delegation_ids:
        events = list(db.execute(
            select(DelegationAuditEntry)
            .where(DelegationAuditEntry.delegation_id.in_(delegation_ids))
            .order_by(DelegationAuditEntry.created_at)
        ).scalars().all())

    return {
        "steps": list(steps),
        "rejections": list(rejections),
        "proxy_approvals": list(proxies),
        "delegation_events": events,
    }
