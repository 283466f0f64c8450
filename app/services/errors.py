"""Domain errors raised by the messaging services.

Each error carries the HTTP status the API layer renders it with.
"""
from __future__ import annotations

import functools
import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MessagingError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MessagingError):
    status_code = 400


class AuthorizationError(MessagingError):
    status_code = 403


class NotFoundError(MessagingError):
    status_code = 404


class ConflictError(MessagingError):
    status_code = 409


class StorageError(MessagingError):
    status_code = 503


def with_storage_retry(attempts: Callable[[], int]) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry a storage-bound callable on SQLAlchemyError, then raise StorageError.

    Only wrap reads and idempotent writes. The wrapped function must take the
    session as its first argument; the session is rolled back between tries.
    Domain errors pass through untouched.
    """

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(db, *args, **kwargs) -> T:
            total = max(1, attempts())
            attempt = 1
            while True:
                try:
                    return fn(db, *args, **kwargs)
                except SQLAlchemyError as exc:
                    logger.warning(
                        "%s: storage error on attempt %d/%d: %s", fn.__name__, attempt, total, exc
                    )
                    db.rollback()
                    if attempt >= total:
                        raise StorageError(f"Storage unavailable during {fn.__name__}") from exc
                    attempt += 1

        return wrapper

    return decorator


def storage_guard(fn: Callable[..., T]) -> Callable[..., T]:
    """Translate SQLAlchemyError into StorageError without retrying (non-idempotent writes)."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs) -> T:
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error("%s: storage error: %s", fn.__name__, exc)
            raise StorageError(f"Storage unavailable during {fn.__name__}") from exc

    return wrapper
