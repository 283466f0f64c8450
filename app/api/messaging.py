from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.dependencies import get_current_user_id, resolve_caller
from app.database import get_db
from app.models.conversation import ConversationKind
from app.models.message import Message
from app.models.user import User
from app.schemas.messaging import (
    ActionResponseSchema,
    AddMemberSchema,
    ConversationCreatedSchema,
    ConversationListResponseSchema,
    ConversationSchema,
    CreateDirectSchema,
    CreateGroupSchema,
    MarkReadResponseSchema,
    MarkReadSchema,
    MessageListResponseSchema,
    MessagePreviewSchema,
    MessageSchema,
    MessageSentResponseSchema,
    ParticipantSchema,
    RenameGroupSchema,
    SearchUsersResponseSchema,
    SendMessageSchema,
    SetAvatarSchema,
    UnreadSummaryResponseSchema,
    UserSchema,
)
from app.services import conversation_facade, user_directory
from app.services.conversation_facade import ConversationSummary, as_utc

router = APIRouter(tags=["messaging"])


def format_timestamp(created_at: datetime, now: datetime | None = None) -> str:
    """Human-friendly relative time, e.g. "Just now" or "3 hours ago"."""
    created_at = as_utc(created_at)
    now = now or datetime.now(timezone.utc)
    minutes = int((now - created_at).total_seconds() // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes} minute{'' if minutes == 1 else 's'} ago"
    if minutes < 1440:
        hours = minutes // 60
        return f"{hours} hour{'' if hours == 1 else 's'} ago"
    if minutes < 10080:
        days = minutes // 1440
        return f"{days} day{'' if days == 1 else 's'} ago"
    return created_at.strftime("%m/%d/%Y")


def _user_schema(user: User | None) -> UserSchema | None:
    if user is None:
        return None
    handle = user.email.split("@")[0]
    return UserSchema(
        id=user.id,
        name=user.display_name,
        username=user.username or handle,
        email=user.email,
        profile_picture=user.profile_picture or "",
        user_type=user.user_type.value.lower(),
    )


def _message_schema(message: Message, sender: User | None, requester_id: str, last_read: int) -> MessageSchema:
    return MessageSchema(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        sender=_user_schema(sender),
        content=message.content,
        message_type=message.message_type.value,
        is_important=message.is_important,
        sequence=message.sequence,
        is_read=message.sender_id == requester_id or message.sequence <= last_read,
        created_at=as_utc(message.created_at),
        timestamp=format_timestamp(message.created_at),
    )


def _conversation_schema(summary: ConversationSummary, requester_id: str) -> ConversationSchema:
    conv = summary.conversation
    if conv.kind == ConversationKind.GROUP:
        name = conv.name or "Group"
    else:
        others = [u for p, u in summary.participants if p.user_id != requester_id and u is not None]
        name = others[0].display_name if others else "Direct Message"

    last = summary.last_message
    return ConversationSchema(
        id=conv.id,
        type=conv.kind.value,
        name=name,
        avatar_url=conv.avatar_url,
        participants=[
            ParticipantSchema(
                id=p.user_id,
                user_id=p.user_id,
                role=p.role.value,
                last_read_sequence=p.last_read_sequence,
                user=_user_schema(u),
            )
            for p, u in summary.participants
        ],
        last_message=(
            MessagePreviewSchema(
                id=last.id,
                sender_id=last.sender_id,
                message=last.content,
                message_type=last.message_type.value,
                sequence=last.sequence,
                created_at=as_utc(last.created_at),
                timestamp=format_timestamp(last.created_at),
            )
            if last is not None
            else None
        ),
        unread_count=summary.unread_count,
        created_at=as_utc(conv.created_at),
        updated_at=as_utc(conv.updated_at),
    )


@router.get("/search", response_model=SearchUsersResponseSchema)
def search_users(
    search_term: str | None = Query(None, alias="searchTerm"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Search the directory for people to message (excludes the caller)."""
    users = conversation_facade.search_users(db, user_id, search_term)
    return SearchUsersResponseSchema(users=[_user_schema(u) for u in users])


@router.get("/conversations", response_model=ConversationListResponseSchema)
def list_conversations(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """List the caller's conversations with previews, most recent first."""
    summaries = conversation_facade.list_conversations(db, user_id)
    return ConversationListResponseSchema(
        conversations=[_conversation_schema(s, user_id) for s in summaries]
    )


@router.get("/conversations/unread", response_model=UnreadSummaryResponseSchema)
def unread_summary(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Unread counts per conversation for dashboard badges."""
    unread = conversation_facade.unread_summary(db, user_id)
    return UnreadSummaryResponseSchema(unread=unread, total_unread=sum(unread.values()))


@router.post("/conversations/direct", response_model=ConversationCreatedSchema)
def create_direct(
    body: CreateDirectSchema,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    conversation = conversation_facade.create_direct(db, user_id, body.participant_id)
    return ConversationCreatedSchema(
        conversation_id=conversation.id, message="Direct conversation ready"
    )


@router.post("/conversations/group", response_model=ConversationCreatedSchema)
def create_group(
    body: CreateGroupSchema,
    user_id: str | None = Query(None, alias="userId"),
    db: Session = Depends(get_db),
):
    """Create a group; the caller may be given in the body or as ``userId``."""
    creator_id = resolve_caller(db, body.user_id or user_id)
    conversation = conversation_facade.create_group(
        db, creator_id, body.group_name or "", body.participant_ids, body.avatar_url
    )
    return ConversationCreatedSchema(
        conversation_id=conversation.id, message="Group conversation created successfully"
    )


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponseSchema)
def get_messages(
    conversation_id: str,
    page: int | None = Query(None, ge=1),
    limit: int | None = Query(None, ge=1),
    cursor: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Messages of a conversation, oldest first within the requested page."""
    result = conversation_facade.get_messages(
        db, conversation_id, user_id, page=page, limit=limit, cursor=cursor
    )
    messages = [
        _message_schema(m, result.senders.get(m.sender_id), user_id, result.last_read_sequence)
        for m in reversed(result.messages)
    ]
    return MessageListResponseSchema(messages=messages, next_cursor=result.next_cursor)


@router.post("/conversations/{conversation_id}/messages", response_model=MessageSentResponseSchema)
def send_message(
    conversation_id: str,
    body: SendMessageSchema,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    message = conversation_facade.send_message(
        db,
        conversation_id,
        user_id,
        body.content or "",
        body.message_type,
        body.is_important,
    )
    sender = user_directory.get_active_user(db, user_id)
    return MessageSentResponseSchema(
        message=_message_schema(message, sender, user_id, last_read=0)
    )


@router.post("/conversations/{conversation_id}/read", response_model=MarkReadResponseSchema)
def mark_read(
    conversation_id: str,
    body: MarkReadSchema | None = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    upto = body.upto_sequence if body is not None else None
    pointer = conversation_facade.mark_read(db, conversation_id, user_id, upto)
    return MarkReadResponseSchema(last_read_sequence=pointer)


@router.put("/conversations/{conversation_id}/name", response_model=ActionResponseSchema)
def rename_group(
    conversation_id: str,
    body: RenameGroupSchema,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    conversation_facade.rename_group(db, conversation_id, user_id, body.name or "")
    return ActionResponseSchema(message="Group name updated successfully")


@router.put("/conversations/{conversation_id}/avatar", response_model=ActionResponseSchema)
def set_avatar(
    conversation_id: str,
    body: SetAvatarSchema,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    conversation_facade.set_avatar(db, conversation_id, user_id, body.avatar_url or "")
    return ActionResponseSchema(message="Group avatar updated successfully")


@router.post("/conversations/{conversation_id}/members", response_model=ActionResponseSchema)
def add_member(
    conversation_id: str,
    body: AddMemberSchema,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    conversation_facade.add_member(db, conversation_id, user_id, body.member_id)
    return ActionResponseSchema(message="Member added to group successfully")


@router.delete("/conversations/{conversation_id}", response_model=ActionResponseSchema)
def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Hide the conversation for the caller; other participants keep it."""
    conversation_facade.delete_conversation(db, conversation_id, user_id)
    return ActionResponseSchema(message="Conversation deleted successfully")
