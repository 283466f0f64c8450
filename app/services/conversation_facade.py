"""API-facing orchestration over the messaging services.

Each write delegates to exactly one service call, which commits; notification
fan-out is only enqueued once that call has returned.
"""
from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.config import settings
from app.models.conversation import Conversation
from app.models.message import Message, MessageType
from app.models.notification_event import NotificationKind
from app.models.participant import Participant
from app.models.user import User
from app.services import (
    conversation_manager,
    membership_registry,
    message_store,
    notification_dispatcher,
    read_state,
    user_directory,
)
from app.services.errors import ValidationError, with_storage_retry

logger = logging.getLogger(__name__)

_MIN_SEARCH_TERM = 2


@dataclasses.dataclass
class ConversationSummary:
    conversation: Conversation
    participants: list[tuple[Participant, User | None]]
    last_message: Message | None
    unread_count: int

    @property
    def activity_at(self) -> datetime:
        return as_utc(self.conversation.last_message_at or self.conversation.created_at)


@dataclasses.dataclass
class MessagePage:
    messages: list[Message]
    next_cursor: str | None
    senders: dict[str, User]
    last_read_sequence: int


def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _read_attempts() -> int:
    return settings.STORAGE_READ_RETRIES + 1


def search_users(db: Session, requester_id: str, term: str | None) -> list[User]:
    term = (term or "").strip()
    if len(term) < _MIN_SEARCH_TERM:
        raise ValidationError("Search term must be at least 2 characters long")
    return user_directory.search(db, term, requester_id, settings.SEARCH_RESULT_LIMIT)


@with_storage_retry(_read_attempts)
def list_conversations(db: Session, user_id: str) -> list[ConversationSummary]:
    """Visible conversations of ``user_id``, most recent activity first."""
    rows = (
        db.query(Conversation, Participant)
        .join(Participant, Participant.conversation_id == Conversation.id)
        .filter(Participant.user_id == user_id)
        .all()
    )
    visible = [c for c, p in rows if not p.is_hidden(c.last_sequence)]
    if not visible:
        return []

    ids = [c.id for c in visible]
    unread = read_state.unread_summary(db, user_id)
    previews = message_store.last_messages(db, ids)

    members: dict[str, list[Participant]] = {cid: [] for cid in ids}
    for participant in (
        db.query(Participant)
        .filter(Participant.conversation_id.in_(ids))
        .order_by(Participant.joined_at.asc(), Participant.user_id.asc())
        .all()
    ):
        members[participant.conversation_id].append(participant)
    users = user_directory.users_by_id(
        db, [p.user_id for plist in members.values() for p in plist]
    )

    summaries = [
        ConversationSummary(
            conversation=c,
            participants=[(p, users.get(p.user_id)) for p in members[c.id]],
            last_message=previews.get(c.id),
            unread_count=unread.get(c.id, 0),
        )
        for c in visible
    ]
    summaries.sort(key=lambda s: (s.activity_at, s.conversation.id), reverse=True)
    return summaries


def unread_summary(db: Session, user_id: str) -> dict[str, int]:
    return read_state.unread_summary(db, user_id)


def create_direct(db: Session, requester_id: str, participant_id: str | None) -> Conversation:
    if not participant_id:
        raise ValidationError("Participant ID is required")
    return conversation_manager.find_or_create_direct(db, requester_id, participant_id)


def create_group(
    db: Session,
    creator_id: str,
    group_name: str,
    participant_ids: list[str],
    avatar_url: str | None = None,
) -> Conversation:
    return conversation_manager.create_group(db, creator_id, group_name, participant_ids, avatar_url)


def send_message(
    db: Session,
    conversation_id: str,
    sender_id: str,
    content: str,
    message_type: str | MessageType = MessageType.TEXT,
    is_important: bool = False,
) -> Message:
    message = message_store.append(
        db, conversation_id, sender_id, content, message_type, is_important
    )
    notification_dispatcher.enqueue_message_appended(message.id)
    return message


def get_messages(
    db: Session,
    conversation_id: str,
    requester_id: str,
    page: int | None = None,
    limit: int | None = None,
    cursor: str | None = None,
) -> MessagePage:
    """A page of messages, newest first. ``cursor`` wins over ``page`` when both are given."""
    if cursor or page is None:
        messages, next_cursor = message_store.page(db, conversation_id, requester_id, cursor, limit)
    else:
        messages, next_cursor = message_store.page_by_number(
            db, conversation_id, requester_id, page, limit
        )
    participant = membership_registry.require_participant(db, conversation_id, requester_id)
    senders = user_directory.users_by_id(db, [m.sender_id for m in messages])
    return MessagePage(
        messages=messages,
        next_cursor=next_cursor,
        senders=senders,
        last_read_sequence=participant.last_read_sequence,
    )


def mark_read(
    db: Session, conversation_id: str, user_id: str, upto_sequence: int | None = None
) -> int:
    return read_state.mark_read(db, conversation_id, user_id, upto_sequence)


def rename_group(db: Session, conversation_id: str, actor_id: str, name: str) -> Conversation:
    conversation = conversation_manager.rename_group(db, conversation_id, actor_id, name)
    notification_dispatcher.enqueue_conversation_event(
        conversation_id, actor_id, NotificationKind.GROUP_RENAMED, {"name": conversation.name}
    )
    return conversation


def set_avatar(db: Session, conversation_id: str, actor_id: str, avatar_url: str) -> Conversation:
    conversation = conversation_manager.set_group_avatar(db, conversation_id, actor_id, avatar_url)
    notification_dispatcher.enqueue_conversation_event(
        conversation_id,
        actor_id,
        NotificationKind.AVATAR_CHANGED,
        {"avatar_url": conversation.avatar_url},
    )
    return conversation


def add_member(db: Session, conversation_id: str, actor_id: str, member_id: str | None) -> Participant:
    if not member_id:
        raise ValidationError("Member ID is required")
    participant = membership_registry.add_member(db, conversation_id, actor_id, member_id)
    notification_dispatcher.enqueue_conversation_event(
        conversation_id, actor_id, NotificationKind.MEMBER_ADDED, {"member_id": member_id}
    )
    return participant


def delete_conversation(db: Session, conversation_id: str, user_id: str) -> None:
    conversation_manager.delete_for_participant(db, conversation_id, user_id)
