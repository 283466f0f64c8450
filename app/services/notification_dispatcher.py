"""Notification fan-out for messaging activity.

Events are recorded once per (recipient, event_key): the message id for new
messages and a per-event uuid for group events. Re-running a fan-out after an
upstream retry therefore never notifies anyone twice. Everything here runs
after the triggering write has committed, inside a Celery worker.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.conversation import Conversation
from app.models.message import Message
from app.models.notification_event import NotificationEvent, NotificationKind
from app.models.participant import Participant
from app.services import notification_service, user_directory
from app.services.membership_registry import list_participants

logger = logging.getLogger(__name__)

_SYSTEM_KINDS = {
    NotificationKind.MEMBER_ADDED,
    NotificationKind.GROUP_RENAMED,
    NotificationKind.AVATAR_CHANGED,
}


def preview(content: str, limit: int | None = None) -> str:
    limit = settings.NOTIFICATION_PREVIEW_CHARS if limit is None else limit
    if len(content) <= limit:
        return content
    return content[:limit] + "..."


def new_event_key() -> str:
    return str(uuid.uuid4())


def _record(
    db: Session,
    *,
    recipient_id: str,
    conversation_id: str,
    message_id: str | None,
    kind: NotificationKind,
    event_key: str,
    title: str,
    body: str,
    actor_id: str | None = None,
) -> NotificationEvent | None:
    """Insert one event; None if this (recipient, event_key) was already recorded."""
    already = (
        db.query(NotificationEvent.id)
        .filter(
            NotificationEvent.recipient_id == recipient_id,
            NotificationEvent.event_key == event_key,
        )
        .first()
    )
    if already is not None:
        return None

    event = NotificationEvent(
        recipient_id=recipient_id,
        conversation_id=conversation_id,
        message_id=message_id,
        actor_id=actor_id,
        kind=kind,
        event_key=event_key,
        title=title,
        body=body,
        created_at=datetime.now(timezone.utc),
    )
    try:
        with db.begin_nested():
            db.add(event)
    except IntegrityError:
        return None
    return event


def emit_for_message(db: Session, message_id: str) -> list[NotificationEvent]:
    """Record a message notification for every participant except the sender."""
    message = db.query(Message).filter(Message.id == message_id).first()
    if message is None:
        logger.warning("emit_for_message: message %s not found", message_id)
        return []

    sender = user_directory.get_active_user(db, message.sender_id)
    sender_name = sender.display_name if sender else "Unknown"
    title = f"New message from {sender_name}"
    body = preview(message.content)

    created: list[NotificationEvent] = []
    for participant in list_participants(db, message.conversation_id):
        if participant.user_id == message.sender_id:
            continue
        event = _record(
            db,
            recipient_id=participant.user_id,
            conversation_id=message.conversation_id,
            message_id=message.id,
            kind=NotificationKind.MESSAGE,
            event_key=message.id,
            title=title,
            body=body,
        )
        if event is not None:
            created.append(event)
    db.commit()
    logger.debug("emit_for_message: message=%s new_events=%d", message_id, len(created))
    return created


def _system_body(kind: NotificationKind, actor_name: str, detail: dict, db: Session) -> str:
    if kind == NotificationKind.MEMBER_ADDED:
        member = user_directory.get_active_user(db, detail.get("member_id", ""))
        member_name = member.display_name if member else "a new member"
        return f"{actor_name} added {member_name} to the group"
    if kind == NotificationKind.GROUP_RENAMED:
        return f"{actor_name} renamed the group to {detail.get('name', '')}"
    return f"{actor_name} changed the group photo"


def emit_for_conversation_event(
    db: Session,
    conversation_id: str,
    actor_id: str,
    kind: NotificationKind,
    event_key: str,
    detail: dict | None = None,
) -> list[NotificationEvent]:
    """Record a system notification for all current participants of a group."""
    if kind not in _SYSTEM_KINDS:
        raise ValueError(f"{kind!r} is not a conversation event kind")
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        logger.warning("emit_for_conversation_event: conversation %s not found", conversation_id)
        return []

    actor = user_directory.get_active_user(db, actor_id)
    actor_name = actor.display_name if actor else "Someone"
    title = conversation.name or "Group"
    body = _system_body(kind, actor_name, detail or {}, db)

    created: list[NotificationEvent] = []
    for participant in list_participants(db, conversation_id):
        event = _record(
            db,
            recipient_id=participant.user_id,
            conversation_id=conversation_id,
            message_id=None,
            kind=kind,
            event_key=event_key,
            title=title,
            body=body,
            actor_id=actor_id,
        )
        if event is not None:
            created.append(event)
    db.commit()
    logger.debug(
        "emit_for_conversation_event: conversation=%s kind=%s new_events=%d",
        conversation_id,
        kind.value,
        len(created),
    )
    return created


def _should_push(db: Session, event: NotificationEvent) -> bool:
    if event.actor_id is not None and event.recipient_id == event.actor_id:
        return False
    if event.kind == NotificationKind.MESSAGE:
        # Only notify while the message is still unread for the recipient.
        row = (
            db.query(Participant.last_read_sequence, Message.sequence)
            .join(Message, Message.conversation_id == Participant.conversation_id)
            .filter(
                Participant.conversation_id == event.conversation_id,
                Participant.user_id == event.recipient_id,
                Message.id == event.message_id,
            )
            .first()
        )
        return row is not None and row[0] < row[1]
    return True


def _push_data(event: NotificationEvent) -> dict:
    data = {"type": event.kind.value, "conversationId": event.conversation_id}
    if event.message_id:
        data["messageId"] = event.message_id
    return data


def _claim(db: Session, event_id: str, now: datetime) -> bool:
    """Mark an event delivered unless another worker already has. Commits."""
    result = db.execute(
        update(NotificationEvent)
        .where(NotificationEvent.id == event_id, NotificationEvent.delivered_at.is_(None))
        .values(delivered_at=now)
    )
    db.commit()
    return result.rowcount == 1


def _release(db: Session, event_id: str) -> None:
    db.execute(
        update(NotificationEvent)
        .where(NotificationEvent.id == event_id)
        .values(delivered_at=None)
    )
    db.commit()


def deliver(db: Session, events: list[NotificationEvent]) -> int:
    """Hand events to the push collaborator; returns how many were pushed.

    Each event is claimed before its push, so an event already taken by
    another fan-out or by ``redeliver_pending`` is skipped. Events that need
    no push (already read, or the actor's own group event) are claimed and
    left at that. A failed push releases the claim for a later retry and
    never raises.
    """
    pushed = 0
    for event in events:
        event_id = event.id
        wanted = _should_push(db, event)
        if not _claim(db, event_id, datetime.now(timezone.utc)) or not wanted:
            continue
        try:
            notification_service.send_push_notification(
                recipient_id=event.recipient_id,
                title=event.title,
                body=event.body,
                data=_push_data(event),
            )
        except Exception as exc:
            logger.error("deliver: failed to push event %s to %s: %s", event_id, event.recipient_id, exc)
            _release(db, event_id)
            continue
        pushed += 1
    return pushed


def redeliver_pending(
    db: Session,
    max_age: timedelta = timedelta(days=1),
    grace: timedelta | None = None,
) -> int:
    """Retry delivery of recent events whose push previously failed.

    Events younger than ``grace`` are left to the fan-out task that
    recorded them.
    """
    if grace is None:
        grace = timedelta(seconds=settings.REDELIVERY_GRACE_SECONDS)
    now = datetime.now(timezone.utc)
    pending = (
        db.query(NotificationEvent)
        .filter(
            NotificationEvent.delivered_at.is_(None),
            NotificationEvent.created_at >= now - max_age,
            NotificationEvent.created_at <= now - grace,
        )
        .order_by(NotificationEvent.created_at.asc())
        .all()
    )
    if not pending:
        return 0
    return deliver(db, pending)


def enqueue_message_appended(message_id: str) -> None:
    """Schedule fan-out for a committed message. Never raises."""
    from app.tasks.notification_tasks import fan_out_message

    try:
        fan_out_message.delay(message_id)
    except Exception as exc:
        logger.error("enqueue_message_appended: could not enqueue message %s: %s", message_id, exc)


def enqueue_conversation_event(
    conversation_id: str,
    actor_id: str,
    kind: NotificationKind,
    detail: dict | None = None,
) -> None:
    """Schedule fan-out for a committed group change. Never raises."""
    from app.tasks.notification_tasks import fan_out_conversation_event

    try:
        fan_out_conversation_event.delay(
            conversation_id, actor_id, kind.value, new_event_key(), detail or {}
        )
    except Exception as exc:
        logger.error(
            "enqueue_conversation_event: could not enqueue %s for conversation %s: %s",
            kind.value,
            conversation_id,
            exc,
        )
