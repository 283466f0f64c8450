from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- requests ---------------------------------------------------------------


class CreateDirectSchema(CamelModel):
    participant_id: str | None = None


class CreateGroupSchema(CamelModel):
    user_id: str | None = None
    group_name: str | None = None
    participant_ids: list[str] = []
    avatar_url: str | None = None


class SendMessageSchema(CamelModel):
    content: str | None = None
    message_type: str = "text"
    is_important: bool = False


class MarkReadSchema(CamelModel):
    upto_sequence: int | None = None


class RenameGroupSchema(CamelModel):
    name: str | None = None


class SetAvatarSchema(CamelModel):
    avatar_url: str | None = None


class AddMemberSchema(CamelModel):
    member_id: str | None = None


# --- responses --------------------------------------------------------------


class UserSchema(CamelModel):
    id: str
    name: str
    username: str
    email: str
    profile_picture: str
    user_type: str


class ParticipantSchema(CamelModel):
    id: str
    user_id: str
    role: Literal["owner", "member"]
    last_read_sequence: int
    user: UserSchema | None


class MessagePreviewSchema(CamelModel):
    id: str
    sender_id: str
    message: str
    message_type: str
    sequence: int
    created_at: datetime
    timestamp: str


class ConversationSchema(CamelModel):
    id: str
    type: Literal["direct", "group"]
    name: str
    avatar_url: str | None
    participants: list[ParticipantSchema]
    last_message: MessagePreviewSchema | None
    unread_count: int
    created_at: datetime
    updated_at: datetime


class MessageSchema(CamelModel):
    id: str
    conversation_id: str
    sender_id: str
    sender: UserSchema | None
    content: str
    message_type: str
    is_important: bool
    sequence: int
    is_read: bool
    created_at: datetime
    timestamp: str


class SuccessSchema(CamelModel):
    success: bool = True


class SearchUsersResponseSchema(SuccessSchema):
    users: list[UserSchema]


class ConversationListResponseSchema(SuccessSchema):
    conversations: list[ConversationSchema]


class UnreadSummaryResponseSchema(SuccessSchema):
    unread: dict[str, int]
    total_unread: int


class ConversationCreatedSchema(SuccessSchema):
    conversation_id: str
    message: str


class MessageListResponseSchema(SuccessSchema):
    messages: list[MessageSchema]
    next_cursor: str | None


class MessageSentResponseSchema(SuccessSchema):
    message: MessageSchema


class MarkReadResponseSchema(SuccessSchema):
    last_read_sequence: int


class ActionResponseSchema(SuccessSchema):
    message: str
