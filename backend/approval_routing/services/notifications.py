"""Notification intents: outbox rows written alongside each transition.

Delivery is out of scope here. Each intent is also logged, so a deployment
without a notifier still shows who would have been told what.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.orm import Session

from approval_routing.models.notification import NotificationIntent, NotificationType

logger = logging.getLogger(__name__)


def emit(
    db: Session,
    recipient_id: str,
    notification_type: NotificationType,
    at: datetime,
    instance_id: uuid.UUID | None = None,
    step_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> NotificationIntent:
    intent = NotificationIntent(
        recipient_id=recipient_id,
        notification_type=notification_type.value,
        instance_id=instance_id,
        step_id=step_id,
        payload=payload or {},
        created_at=at,
    )
    db.add(intent)
    logger.info(
        "NOTIFY %s -> %s (instance=%s step=%s)",
        notification_type.value, recipient_id, instance_id, step_id,
    )
    return intent


def emit_many(
    db: Session,
    recipients: Iterable[str],
    notification_type: NotificationType,
    at: datetime,
    instance_id: uuid.UUID | None = None,
    step_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> list[NotificationIntent]:
    """Emit one intent per distinct recipient, preserving first-seen order."""
    seen: list[str] = []
    for recipient in recipients:
        if recipient and recipient not in seen:
            seen.append(recipient)
    intents = [emit(db, r, notification_type, at, instance_id, step_id, payload) for r in seen]
    if intents:
        db.flush()
    return intents
