from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging

from approval_routing.core.config import settings
from approval_routing.core.logging import setup_logging

celery_app = Celery(
    "approval_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["approval_routing.workers.escalation_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    # A pass that outlives the poll interval would overlap the next one.
    task_soft_time_limit=settings.ESCALATION_POLL_MINUTES * 60,
    result_expires=24 * 3600,
)

celery_app.conf.beat_schedule = {
    "check-escalations": {
        "task": "approval_routing.workers.escalation_tasks.check_escalations",
        "schedule": crontab(minute=f"*/{settings.ESCALATION_POLL_MINUTES}"),
    },
    "record-delegation-expirations-daily": {
        "task": "approval_routing.workers.escalation_tasks.record_delegation_expirations",
        "schedule": crontab(hour=settings.DELEGATION_EXPIRY_HOUR_UTC, minute=5),
    },
}


@celery_setup_logging.connect
def configure_worker_logging(**kwargs) -> None:
    """Replace Celery's logging setup so workers log like the API."""
    setup_logging(service="worker")
