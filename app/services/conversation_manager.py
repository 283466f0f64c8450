"""Conversation lifecycle: direct find-or-create, groups, group metadata, soft delete."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.conversation import Conversation, ConversationKind, direct_pair_key
from app.models.participant import Participant, ParticipantRole
from app.services import read_state, user_directory
from app.services.errors import (
    StorageError,
    ValidationError,
    storage_guard,
    with_storage_retry,
)
from app.services.membership_registry import get_conversation, require_participant

logger = logging.getLogger(__name__)


def _idempotent_attempts() -> int:
    return settings.STORAGE_READ_RETRIES + 1


def _find_direct(db: Session, key: str) -> Conversation | None:
    return db.query(Conversation).filter(Conversation.direct_key == key).first()


def _restore_visibility(participant: Participant | None) -> bool:
    if participant is None or participant.hidden_through_sequence is None:
        return False
    participant.hidden_at = None
    participant.hidden_through_sequence = None
    return True


@with_storage_retry(_idempotent_attempts)
def find_or_create_direct(db: Session, user_a: str, user_b: str) -> Conversation:
    """Return the direct conversation between two users, creating it if needed.

    The unique ``direct_key`` decides races: a writer whose insert loses
    re-reads and returns the winner's row. ``user_a`` is the requester; if
    they had hidden the conversation it becomes visible to them again.
    """
    if user_a == user_b:
        raise ValidationError("Cannot start a direct conversation with yourself")
    user_directory.require_users(db, [user_a, user_b])
    key = direct_pair_key(user_a, user_b)

    attempts = max(1, settings.FIND_OR_CREATE_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        existing = _find_direct(db, key)
        if existing is not None:
            requester = (
                db.query(Participant)
                .filter(Participant.conversation_id == existing.id, Participant.user_id == user_a)
                .first()
            )
            if _restore_visibility(requester):
                db.commit()
            return existing

        now = datetime.now(timezone.utc)
        conversation = Conversation(
            kind=ConversationKind.DIRECT,
            created_by=user_a,
            direct_key=key,
            last_sequence=0,
            created_at=now,
            updated_at=now,
        )
        try:
            with db.begin_nested():
                db.add(conversation)
                db.flush()
                db.add_all(
                    [
                        Participant(
                            conversation_id=conversation.id,
                            user_id=user_id,
                            role=ParticipantRole.MEMBER,
                            joined_at=now,
                            last_read_sequence=0,
                        )
                        for user_id in (user_a, user_b)
                    ]
                )
        except IntegrityError:
            logger.info(
                "find_or_create_direct: lost race for pair %s (attempt %d/%d), re-reading",
                key,
                attempt,
                attempts,
            )
            continue

        db.commit()
        logger.info("find_or_create_direct: created conversation=%s pair=%s", conversation.id, key)
        return conversation

    raise StorageError("Could not create direct conversation, please retry")


@storage_guard
def create_group(
    db: Session,
    creator_id: str,
    name: str,
    member_ids: list[str],
    avatar_url: str | None = None,
) -> Conversation:
    """Create a group with the creator as owner and ``member_ids`` as members."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Group name is required")
    if not member_ids:
        raise ValidationError("At least one other participant is required")
    if len(set(member_ids)) != len(member_ids):
        raise ValidationError("Participant IDs must be unique")
    if creator_id in member_ids:
        raise ValidationError("Participant IDs must not include the creator")
    user_directory.require_users(db, [creator_id, *member_ids])

    now = datetime.now(timezone.utc)
    conversation = Conversation(
        kind=ConversationKind.GROUP,
        name=name,
        avatar_url=avatar_url or None,
        created_by=creator_id,
        last_sequence=0,
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    db.flush()

    db.add(
        Participant(
            conversation_id=conversation.id,
            user_id=creator_id,
            role=ParticipantRole.OWNER,
            joined_at=now,
            last_read_sequence=0,
        )
    )
    for member_id in member_ids:
        db.add(
            Participant(
                conversation_id=conversation.id,
                user_id=member_id,
                role=ParticipantRole.MEMBER,
                joined_at=now,
                last_read_sequence=0,
            )
        )
    db.commit()
    logger.info(
        "create_group: conversation=%s creator=%s members=%d",
        conversation.id,
        creator_id,
        len(member_ids) + 1,
    )
    return conversation


def _require_group_participant(db: Session, conversation_id: str, actor_id: str) -> Conversation:
    conversation = get_conversation(db, conversation_id)
    require_participant(db, conversation_id, actor_id)
    if conversation.kind != ConversationKind.GROUP:
        raise ValidationError("Only group conversations can be updated")
    return conversation


@storage_guard
def rename_group(db: Session, conversation_id: str, actor_id: str, new_name: str) -> Conversation:
    conversation = _require_group_participant(db, conversation_id, actor_id)
    new_name = (new_name or "").strip()
    if not new_name:
        raise ValidationError("Group name is required")
    conversation.name = new_name
    conversation.updated_at = datetime.now(timezone.utc)
    db.commit()
    logger.info("rename_group: conversation=%s actor=%s", conversation_id, actor_id)
    return conversation


@storage_guard
def set_group_avatar(
    db: Session, conversation_id: str, actor_id: str, avatar_url: str
) -> Conversation:
    conversation = _require_group_participant(db, conversation_id, actor_id)
    avatar_url = (avatar_url or "").strip()
    if not avatar_url:
        raise ValidationError("Avatar URL is required")
    conversation.avatar_url = avatar_url
    conversation.updated_at = datetime.now(timezone.utc)
    db.commit()
    logger.info("set_group_avatar: conversation=%s actor=%s", conversation_id, actor_id)
    return conversation


@with_storage_retry(_idempotent_attempts)
def delete_for_participant(db: Session, conversation_id: str, user_id: str) -> None:
    """Hide the conversation for ``user_id`` only.

    Messages and other participants are untouched. Everything up to the
    current newest message counts as read; a newer message unhides it.
    """
    conversation = get_conversation(db, conversation_id)
    participant = require_participant(db, conversation_id, user_id)
    if participant.is_hidden(conversation.last_sequence):
        return

    participant.hidden_at = datetime.now(timezone.utc)
    participant.hidden_through_sequence = conversation.last_sequence
    db.flush()
    read_state.advance_pointer(db, conversation_id, user_id, conversation.last_sequence)
    db.commit()
    logger.info(
        "delete_for_participant: conversation=%s user=%s through_seq=%d",
        conversation_id,
        user_id,
        conversation.last_sequence,
    )
