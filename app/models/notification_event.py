from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class NotificationKind(str, enum.Enum):
    MESSAGE = "message"
    MEMBER_ADDED = "member_added"
    GROUP_RENAMED = "group_renamed"
    AVATAR_CHANGED = "avatar_changed"


class NotificationEvent(Base):
    """Derived notification record; one per (recipient, event_key)."""

    __tablename__ = "notification_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    recipient_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    message_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("messages.id", ondelete="CASCADE"), nullable=True
    )
    kind: Mapped[NotificationKind] = mapped_column(
        Enum(NotificationKind, name="notification_kind", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    # user whose action triggered a group event; never pushed their own event
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    # message id for message events, a per-event uuid for system events
    event_key: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("recipient_id", "event_key", name="uq_notification_events_recipient_key"),
        Index("ix_notification_events_pending", "delivered_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<NotificationEvent id={self.id} kind={self.kind.value} recipient={self.recipient_id}>"
