"""Escalation scheduler passes.

``find_due_escalations`` only reads. ``run_escalation_pass`` hands each due
step to ``WorkflowEngine.escalate`` as the system actor; the engine re-checks
status and step id under the instance lock, so a step decided between the
scan and the escalation is skipped rather than escalated.
"""
import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from approval_routing.core.clock import Clock, SystemClock, as_utc
from approval_routing.models.notification import NotificationIntent, NotificationType
from approval_routing.models.workflow import SYSTEM_ACTOR, WorkflowInstance, WorkflowStatus
from approval_routing.services import notifications as notify_svc
from approval_routing.services.directory import IdentityDirectory
from approval_routing.services.locking import InstanceLockManager
from approval_routing.services.workflow import WorkflowEngine

logger = logging.getLogger(__name__)

ESCALATABLE_STATUSES = (WorkflowStatus.pending.value, WorkflowStatus.in_progress.value)
REMINDABLE_STATUSES = ESCALATABLE_STATUSES + (WorkflowStatus.escalated.value,)


def _open_steps(db: Session, statuses: tuple[str, ...]) -> list[WorkflowInstance]:
    return list(db.execute(
        select(WorkflowInstance).where(
            WorkflowInstance.status.in_(statuses),
            WorkflowInstance.current_step_id.isnot(None),
            WorkflowInstance.step_entered_at.isnot(None),
        ).order_by(WorkflowInstance.step_entered_at)
    ).scalars().all())


def find_due_escalations(db: Session, now: datetime) -> list[tuple[uuid.UUID, str]]:
    """(instance id, step id) pairs whose current step has outlived its escalation timeout."""
    due = []
    for instance in _open_steps(db, ESCALATABLE_STATUSES):
        # an escalated step stays escalated after a partial approval
        if instance.escalation_target is not None:
            continue
        tier = WorkflowEngine.plan(instance)[instance.current_step_order - 1]
        timeout = tier.escalation_timeout_hours
        if timeout is None:
            continue
        if as_utc(now) - as_utc(instance.step_entered_at) >= timedelta(hours=timeout):
            due.append((instance.id, instance.current_step_id))
    return due


def run_escalation_pass(
    db: Session,
    directory: IdentityDirectory,
    clock: Clock | None = None,
    locks: InstanceLockManager | None = None,
) -> dict[str, int]:
    """Escalate every due step once. A failing instance is logged and left for the next tick."""
    clock = clock or SystemClock()
    engine = WorkflowEngine(db, directory, clock=clock, locks=locks)
    due = find_due_escalations(db, clock.now())
    stats = {"due": len(due), "escalated": 0, "skipped": 0, "failed": 0}

    for instance_id, step_id in due:
        try:
            if engine.escalate(instance_id, step_id=step_id, actor_id=SYSTEM_ACTOR):
                stats["escalated"] += 1
            else:
                stats["skipped"] += 1
        except Exception:
            logger.exception("Escalation failed for instance %s step %s", instance_id, step_id)
            stats["failed"] += 1

    if due:
        logger.info("Escalation pass: %s", stats)
    return stats


def _last_reminder(db: Session, instance: WorkflowInstance) -> datetime | None:
    last = db.execute(
        select(func.max(NotificationIntent.created_at)).where(
            NotificationIntent.instance_id == instance.id,
            NotificationIntent.step_id == instance.current_step_id,
            NotificationIntent.notification_type == NotificationType.approval_reminder.value,
        )
    ).scalar()
    return as_utc(last) if last is not None else None


def run_reminder_pass(
    db: Session,
    directory: IdentityDirectory,
    clock: Clock | None = None,
) -> int:
    """Emit ``approval_reminder`` intents; workflow instances are not modified."""
    clock = clock or SystemClock()
    now = clock.now()
    engine = WorkflowEngine(db, directory, clock=clock)
    sent = 0

    for instance in _open_steps(db, REMINDABLE_STATUSES):
        tier = WorkflowEngine.plan(instance)[instance.current_step_order - 1]
        interval = tier.reminder_interval_hours
        if interval is None:
            continue
        since = _last_reminder(db, instance) or as_utc(instance.step_entered_at)
        if now - since < timedelta(hours=interval):
            continue
        recipients = [e.user_id for e in engine.eligible_approvers(instance.id)]
        intents = notify_svc.emit_many(
            db, recipients, NotificationType.approval_reminder, now,
            instance_id=instance.id, step_id=instance.current_step_id,
            payload={"tier_level": tier.level, "waiting_since": as_utc(instance.step_entered_at).isoformat()},
        )
        sent += len(intents)

    db.commit()
    if sent:
        logger.info("Reminder pass: %d reminders emitted", sent)
    return sent
