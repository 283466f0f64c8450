"""Read pointers and unread counts.

A participant's read pointer only moves forward: every write is a conditional
UPDATE guarded by ``last_read_sequence < :target``, so concurrent calls from
several devices converge on the maximum.
"""
from __future__ import annotations

import logging

from sqlalchemy import and_, func, update
from sqlalchemy.orm import Session

from app.config import settings
from app.models.message import Message
from app.models.participant import Participant
from app.services.errors import ValidationError, with_storage_retry
from app.services.membership_registry import get_conversation, require_participant

logger = logging.getLogger(__name__)


def _read_attempts() -> int:
    return settings.STORAGE_READ_RETRIES + 1


def advance_pointer(db: Session, conversation_id: str, user_id: str, sequence: int) -> None:
    """Move the pointer to ``sequence`` unless it is already at or past it. Does not commit."""
    db.execute(
        update(Participant)
        .where(
            Participant.conversation_id == conversation_id,
            Participant.user_id == user_id,
            Participant.last_read_sequence < sequence,
        )
        .values(last_read_sequence=sequence)
    )


@with_storage_retry(_read_attempts)
def mark_read(
    db: Session, conversation_id: str, user_id: str, upto_sequence: int | None = None
) -> int:
    """Advance the caller's read pointer and return its resulting value.

    ``upto_sequence`` defaults to the newest message and is clamped to it.
    """
    conversation = get_conversation(db, conversation_id)
    participant = require_participant(db, conversation_id, user_id)
    if upto_sequence is not None and upto_sequence < 0:
        raise ValidationError("uptoSequence must not be negative")

    target = conversation.last_sequence
    if upto_sequence is not None:
        target = min(upto_sequence, conversation.last_sequence)

    advance_pointer(db, conversation_id, user_id, target)
    db.commit()
    logger.debug(
        "mark_read: conversation=%s user=%s requested=%s pointer=%d",
        conversation_id,
        user_id,
        upto_sequence,
        participant.last_read_sequence,
    )
    return participant.last_read_sequence


@with_storage_retry(_read_attempts)
def unread_count(db: Session, conversation_id: str, user_id: str) -> int:
    participant = require_participant(db, conversation_id, user_id)
    return (
        db.query(func.count(Message.id))
        .filter(
            Message.conversation_id == conversation_id,
            Message.sequence > participant.last_read_sequence,
            Message.sender_id != user_id,
        )
        .scalar()
    ) or 0


@with_storage_retry(_read_attempts)
def unread_summary(db: Session, user_id: str) -> dict[str, int]:
    """Unread count per conversation the user participates in (zeros included)."""
    rows = (
        db.query(Participant.conversation_id, func.count(Message.id))
        .outerjoin(
            Message,
            and_(
                Message.conversation_id == Participant.conversation_id,
                Message.sequence > Participant.last_read_sequence,
                Message.sender_id != user_id,
            ),
        )
        .filter(Participant.user_id == user_id)
        .group_by(Participant.conversation_id)
        .all()
    )
    return {conversation_id: count for conversation_id, count in rows}
