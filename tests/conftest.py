"""Shared test fixtures.

Sets environment variables BEFORE any app imports so that
``app.config.settings`` resolves without a real .env file, PostgreSQL or Redis.
"""

import os
import uuid
from unittest.mock import patch

# --- Environment setup (must happen before app imports) -------------------
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "test")

# --- Now it's safe to import app modules ---------------------------------
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from starlette.testclient import TestClient

from app.database import Base, get_db
from app.main import app
from app.models.user import User, UserType


# In-memory SQLite engine shared across the test session
_engine = create_engine("sqlite://", connect_args={"check_same_thread": False})


# pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy emit it.
@event.listens_for(_engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(_engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


_TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=_engine)


@pytest.fixture(scope="session", autouse=True)
def _create_tables():
    """Create all tables once, drop them when the session ends."""
    Base.metadata.create_all(bind=_engine)
    yield
    Base.metadata.drop_all(bind=_engine)


@pytest.fixture()
def db_session():
    """Yield a transactional DB session that rolls back after each test."""
    connection = _engine.connect()
    transaction = connection.begin()
    session = _TestingSession(bind=connection, join_transaction_mode="create_savepoint")
    yield session
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(autouse=True)
def enqueued():
    """Replace the Celery fan-out tasks so nothing talks to a broker."""
    with (
        patch("app.tasks.notification_tasks.fan_out_message") as message_task,
        patch("app.tasks.notification_tasks.fan_out_conversation_event") as event_task,
    ):
        yield {"message": message_task, "conversation_event": event_task}


@pytest.fixture()
def client(db_session):
    """FastAPI TestClient with ``get_db`` overridden to use the test session."""

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db_session):
    """Factory for directory users."""

    def _make(
        name: str = "Test User",
        user_type: UserType = UserType.STUDENT,
        is_active: bool = True,
        username: str | None = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=f"{name.lower().replace(' ', '.')}-{uuid.uuid4().hex[:8]}@example.com",
            name=name,
            username=username,
            user_type=user_type,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make
