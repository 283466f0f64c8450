from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.conversation import Conversation, ConversationKind
from app.models.participant import Participant, ParticipantRole
from app.services import user_directory
from app.services.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
    storage_guard,
)

logger = logging.getLogger(__name__)


def get_conversation(db: Session, conversation_id: str) -> Conversation:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None:
        raise NotFoundError("Conversation not found")
    return conversation


def get_participant(db: Session, conversation_id: str, user_id: str) -> Participant | None:
    return (
        db.query(Participant)
        .filter(Participant.conversation_id == conversation_id, Participant.user_id == user_id)
        .first()
    )


def is_participant(db: Session, conversation_id: str, user_id: str) -> bool:
    return get_participant(db, conversation_id, user_id) is not None


def require_participant(db: Session, conversation_id: str, user_id: str) -> Participant:
    """Return the caller's Participant row or raise AuthorizationError."""
    participant = get_participant(db, conversation_id, user_id)
    if participant is None:
        raise AuthorizationError("You are not a participant in this conversation")
    return participant


def list_participants(db: Session, conversation_id: str) -> list[Participant]:
    return (
        db.query(Participant)
        .filter(Participant.conversation_id == conversation_id)
        .order_by(Participant.joined_at.asc(), Participant.user_id.asc())
        .all()
    )


@storage_guard
def add_member(db: Session, conversation_id: str, actor_id: str, new_user_id: str) -> Participant:
    """Add ``new_user_id`` to a group on behalf of an existing participant.

    Raises ConflictError when the user is already a member, including when a
    concurrent request added them first.
    """
    conversation = get_conversation(db, conversation_id)
    require_participant(db, conversation_id, actor_id)
    if conversation.kind != ConversationKind.GROUP:
        raise ValidationError("Can only add members to group conversations")
    user_directory.require_users(db, [new_user_id])

    if is_participant(db, conversation_id, new_user_id):
        raise ConflictError("User is already a member of this group")

    participant = Participant(
        conversation_id=conversation_id,
        user_id=new_user_id,
        role=ParticipantRole.MEMBER,
        joined_at=datetime.now(timezone.utc),
        last_read_sequence=0,
    )
    try:
        with db.begin_nested():
            db.add(participant)
    except IntegrityError:
        logger.info(
            "add_member: concurrent add of user %s to conversation %s", new_user_id, conversation_id
        )
        raise ConflictError("User is already a member of this group")

    conversation.updated_at = datetime.now(timezone.utc)
    db.commit()
    logger.info(
        "add_member: conversation=%s actor=%s added=%s", conversation_id, actor_id, new_user_id
    )
    return participant
