from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class UserType(str, enum.Enum):
    STUDENT = "Student"
    COORDINATOR = "Coordinator"
    ADMIN_COORDINATOR = "AdminCoordinator"
    COMPANY = "Company"
    SYSTEM_ADMIN = "SystemAdmin"


class User(Base):
    """Directory entry owned by the platform's user service.

    Messaging only reads these rows.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType, name="user_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=UserType.STUDENT,
    )
    profile_picture: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0]

    def __repr__(self) -> str:
        return f"<User id={self.id} type={self.user_type.value}>"
