from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ParticipantRole(str, enum.Enum):
    OWNER = "owner"
    MEMBER = "member"


class Participant(Base):
    __tablename__ = "conversation_participants"

    conversation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    role: Mapped[ParticipantRole] = mapped_column(
        Enum(ParticipantRole, name="participant_role", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ParticipantRole.MEMBER,
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_read_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Per-participant soft delete; the conversation stays hidden until a message
    # with sequence > hidden_through_sequence arrives.
    hidden_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    hidden_through_sequence: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def is_hidden(self, last_sequence: int) -> bool:
        if self.hidden_through_sequence is None:
            return False
        return last_sequence <= self.hidden_through_sequence

    def __repr__(self) -> str:
        return (
            f"<Participant conversation={self.conversation_id} user={self.user_id} "
            f"role={self.role.value} read={self.last_read_sequence}>"
        )
