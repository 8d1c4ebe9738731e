"""Celery tasks for the escalation scheduler and delegation housekeeping."""
import logging

from approval_routing.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="approval_routing.workers.escalation_tasks.check_escalations")
def check_escalations() -> dict:
    """Escalate overdue steps, then send due reminders.

    Runs every ESCALATION_POLL_MINUTES. Each instance is escalated inside its
    own lock and transaction; one failing instance does not stop the pass and
    is picked up again on the next tick.
    """
    logger.info("check_escalations: starting escalation pass")
    try:
        from approval_routing.db.session import SyncSessionLocal
        from approval_routing.services.directory import get_directory
        from approval_routing.services.escalation import run_escalation_pass, run_reminder_pass

        directory = get_directory()
        with SyncSessionLocal() as db:
            stats = run_escalation_pass(db, directory)
            stats["reminders"] = run_reminder_pass(db, directory)

        logger.info("check_escalations: done %s", stats)
        return stats

    except Exception as exc:
        logger.exception("check_escalations failed: %s", exc)
        return {"error": str(exc)}


@celery_app.task(name="approval_routing.workers.escalation_tasks.record_delegation_expirations")
def record_delegation_expirations() -> dict:
    """Write one ``expired`` audit entry per delegation whose window has ended."""
    try:
        from approval_routing.core.clock import SystemClock
        from approval_routing.db.session import SyncSessionLocal
        from approval_routing.services.delegation import DelegationRegistry

        with SyncSessionLocal() as db:
            count = DelegationRegistry(db).record_expirations(SystemClock().now())
            db.commit()

        logger.info("record_delegation_expirations: %d recorded", count)
        return {"expired": count}

    except Exception as exc:
        logger.exception("record_delegation_expirations failed: %s", exc)
        return {"error": str(exc)}
