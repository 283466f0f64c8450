from fastapi import Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.services import user_directory


def resolve_caller(db: Session, user_id: str | None) -> str:
    """Accept the identity forwarded by the auth layer if it is an active user."""
    if not user_id or user_directory.get_active_user(db, user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown or inactive user",
        )
    return user_id


def get_current_user_id(
    user_id: str | None = Query(None, alias="userId", description="The authenticated user's ID"),
    db: Session = Depends(get_db),
) -> str:
    return resolve_caller(db, user_id)
