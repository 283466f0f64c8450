"""Append-only, per-conversation ordered message log."""
from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from app.config import settings
from app.models.conversation import Conversation
from app.models.message import Message, MessageType
from app.services.errors import ValidationError, storage_guard, with_storage_retry
from app.services.membership_registry import get_conversation, require_participant

logger = logging.getLogger(__name__)


def _read_attempts() -> int:
    return settings.STORAGE_READ_RETRIES + 1


def encode_cursor(message: Message) -> str:
    raw = json.dumps({"s": message.sequence, "i": message.id}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> tuple[int, str]:
    try:
        padding = "=" * ((4 - len(cursor) % 4) % 4)
        data = json.loads(base64.urlsafe_b64decode(cursor + padding).decode())
        return int(data["s"]), str(data["i"])
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError):
        raise ValidationError("Invalid cursor")


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return settings.DEFAULT_PAGE_SIZE
    return max(1, min(limit, settings.MAX_PAGE_SIZE))


def _parse_message_type(message_type: str | MessageType) -> MessageType:
    try:
        return MessageType(message_type)
    except ValueError:
        allowed = ", ".join(t.value for t in MessageType)
        raise ValidationError(f"Invalid messageType {message_type!r}. Must be one of: {allowed}")


@storage_guard
def append(
    db: Session,
    conversation_id: str,
    sender_id: str,
    content: str,
    message_type: str | MessageType = MessageType.TEXT,
    is_important: bool = False,
) -> Message:
    """Append a message and assign it the conversation's next sequence number.

    The counter on the conversation row is bumped with a single UPDATE, which
    holds the row lock until commit, so concurrent appends never share a
    sequence. The (conversation_id, sequence) unique constraint backs this up.
    """
    get_conversation(db, conversation_id)
    require_participant(db, conversation_id, sender_id)
    if content is None or not content.strip():
        raise ValidationError("Message content is required")
    kind = _parse_message_type(message_type)

    now = datetime.now(timezone.utc)
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            last_sequence=Conversation.last_sequence + 1,
            last_message_at=now,
            updated_at=now,
        )
    )
    sequence = db.execute(
        select(Conversation.last_sequence).where(Conversation.id == conversation_id)
    ).scalar_one()

    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        sequence=sequence,
        content=content.strip(),
        message_type=kind,
        is_important=bool(is_important),
        created_at=now,
    )
    db.add(message)
    db.commit()
    logger.info(
        "append: conversation=%s sender=%s seq=%d type=%s",
        conversation_id,
        sender_id,
        sequence,
        kind.value,
    )
    return message


@with_storage_retry(_read_attempts)
def page(
    db: Session,
    conversation_id: str,
    requester_id: str,
    cursor: str | None = None,
    limit: int | None = None,
) -> tuple[list[Message], str | None]:
    """Newest-first page of messages after an opaque ``(sequence, id)`` cursor."""
    limit = clamp_limit(limit)
    get_conversation(db, conversation_id)
    require_participant(db, conversation_id, requester_id)

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    if cursor:
        sequence, message_id = decode_cursor(cursor)
        query = query.filter(
            or_(
                Message.sequence < sequence,
                and_(Message.sequence == sequence, Message.id < message_id),
            )
        )
    rows = query.order_by(Message.sequence.desc(), Message.id.desc()).limit(limit + 1).all()
    return _split_page(rows, limit)


@with_storage_retry(_read_attempts)
def page_by_number(
    db: Session,
    conversation_id: str,
    requester_id: str,
    page_number: int = 1,
    limit: int | None = None,
) -> tuple[list[Message], str | None]:
    """Offset pagination over the same newest-first ordering (``page`` is 1-based)."""
    get_conversation(db, conversation_id)
    require_participant(db, conversation_id, requester_id)
    if page_number < 1:
        raise ValidationError("page must be >= 1")
    limit = clamp_limit(limit)

    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.sequence.desc(), Message.id.desc())
        .offset((page_number - 1) * limit)
        .limit(limit + 1)
        .all()
    )
    return _split_page(rows, limit)


def _split_page(rows: list[Message], limit: int) -> tuple[list[Message], str | None]:
    has_more = len(rows) > limit
    items = rows[:limit]
    next_cursor = encode_cursor(items[-1]) if has_more and items else None
    return items, next_cursor


def last_messages(db: Session, conversation_ids: list[str]) -> dict[str, Message]:
    """Newest message of each conversation, keyed by conversation id."""
    if not conversation_ids:
        return {}
    rows = (
        db.query(Message)
        .join(
            Conversation,
            and_(
                Conversation.id == Message.conversation_id,
                Conversation.last_sequence == Message.sequence,
            ),
        )
        .filter(Message.conversation_id.in_(conversation_ids))
        .all()
    )
    return {m.conversation_id: m for m in rows}
