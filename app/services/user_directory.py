"""Read-only adapter over the platform user directory."""
from __future__ import annotations

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.models.user import User, UserType
from app.services.errors import NotFoundError


def get_active_user(db: Session, user_id: str) -> User | None:
    return (
        db.query(User)
        .filter(User.id == user_id, User.is_active.is_(True))
        .first()
    )


def require_users(db: Session, user_ids: list[str]) -> dict[str, User]:
    """Return active users keyed by id; NotFoundError names the first missing id."""
    wanted = list(dict.fromkeys(user_ids))
    found = {
        u.id: u
        for u in db.query(User).filter(User.id.in_(wanted), User.is_active.is_(True)).all()
    }
    for user_id in wanted:
        if user_id not in found:
            raise NotFoundError(f"User {user_id!r} not found")
    return found


def users_by_id(db: Session, user_ids: list[str]) -> dict[str, User]:
    if not user_ids:
        return {}
    return {u.id: u for u in db.query(User).filter(User.id.in_(set(user_ids))).all()}


def search(db: Session, term: str, exclude_user_id: str, limit: int) -> list[User]:
    """Case-insensitive substring match on name, username and email.

    System administrators and inactive accounts are never returned.
    ``%`` and ``_`` in the term match literally.
    """
    escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{escaped}%"
    return (
        db.query(User)
        .filter(
            User.id != exclude_user_id,
            User.is_active.is_(True),
            User.user_type != UserType.SYSTEM_ADMIN,
            or_(
                func.lower(User.name).like(pattern, escape="\\"),
                func.lower(User.username).like(pattern, escape="\\"),
                func.lower(User.email).like(pattern, escape="\\"),
            ),
        )
        .order_by(User.name.asc(), User.email.asc())
        .limit(limit)
        .all()
    )
