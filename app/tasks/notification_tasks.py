from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.celery_app import celery_app
from app.database import SessionLocal
from app.models.notification_event import NotificationKind
from app.services import notification_dispatcher

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,
    name="app.tasks.notification_tasks.fan_out_message",
)
def fan_out_message(self, message_id: str) -> None:
    """Record and push new-message notifications for every other participant."""
    db: Session = SessionLocal()
    try:
        events = notification_dispatcher.emit_for_message(db, message_id)
        pushed = notification_dispatcher.deliver(db, events)
        logger.info(
            "fan_out_message: message=%s events=%d pushed=%d", message_id, len(events), pushed
        )
    except SQLAlchemyError as exc:
        logger.warning("fan_out_message: storage error for message %s: %s", message_id, exc)
        raise self.retry(exc=exc)
    finally:
        db.close()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=10,
    name="app.tasks.notification_tasks.fan_out_conversation_event",
)
def fan_out_conversation_event(
    self,
    conversation_id: str,
    actor_id: str,
    kind: str,
    event_key: str,
    detail: dict,
) -> None:
    """Record and push a group change (member added, renamed, new avatar).

    ``event_key`` is minted when the change commits, so a retried task maps
    onto the same notification rows.
    """
    db: Session = SessionLocal()
    try:
        events = notification_dispatcher.emit_for_conversation_event(
            db, conversation_id, actor_id, NotificationKind(kind), event_key, detail
        )
        pushed = notification_dispatcher.deliver(db, events)
        logger.info(
            "fan_out_conversation_event: conversation=%s kind=%s events=%d pushed=%d",
            conversation_id,
            kind,
            len(events),
            pushed,
        )
    except SQLAlchemyError as exc:
        logger.warning(
            "fan_out_conversation_event: storage error for conversation %s: %s", conversation_id, exc
        )
        raise self.retry(exc=exc)
    finally:
        db.close()


@celery_app.task(name="app.tasks.notification_tasks.redeliver_pending_notifications")
def redeliver_pending_notifications() -> None:
    """Runs every 5 minutes via Celery Beat."""
    db = SessionLocal()
    try:
        pushed = notification_dispatcher.redeliver_pending(db)
        if pushed:
            logger.info("redeliver_pending_notifications: pushed %d events", pushed)
    finally:
        db.close()
