"""
Pytest fixtures for testing
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, event, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from followup.application.delivery import SendResult
from followup.application.preferences import get_preferences_cache
from followup.infrastructure.db.session import Base
from followup.infrastructure.db.models import Contact, Reminder, User


def _create_schema(engine) -> None:
    # SQLite doesn't support JSONB: remap to JSON for tests
    for table in Base.metadata.tables.values():
        for col in table.columns:
            if isinstance(col.type, JSONB):
                col.type = JSON()
    Base.metadata.create_all(engine)


@pytest.fixture
def db_engine():
    """In-memory SQLite shared across threads (TestClient runs sync routes in a worker thread)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Session:
    """Create database session for tests"""
    SessionLocal = sessionmaker(bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def file_engine(tmp_path):
    """
    File-backed SQLite where every session gets its own connection (race tests).

    Transactions start with BEGIN IMMEDIATE so concurrent writers queue on the
    busy timeout instead of failing on lock upgrades.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    _create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def _clear_preferences_cache():
    get_preferences_cache().clear()
    yield
    get_preferences_cache().clear()


@pytest.fixture
def make_user(db_session):
    def _make(email="user@example.com", timezone_name="UTC", plan_status=None,
              created_at=datetime(2025, 1, 1, tzinfo=timezone.utc), **fields):
        user = User(email=email, timezone=timezone_name, plan_status=plan_status, created_at=created_at, **fields)
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture
def make_contact(db_session):
    def _make(user_id, name="Alice"):
        contact = Contact(user_id=user_id, name=name)
        db_session.add(contact)
        db_session.commit()
        return contact
    return _make


@pytest.fixture
def make_reminder(db_session):
    def _make(user_id, scheduled_at, message="Follow up on proposal", contact_id=None,
              category="follow_up", status="pending"):
        reminder = Reminder(
            user_id=user_id,
            contact_id=contact_id,
            message=message,
            category=category,
            scheduled_at=scheduled_at,
            status=status,
        )
        db_session.add(reminder)
        db_session.commit()
        return reminder
    return _make


# ---------------------------------------------------------------------------
# Delivery fakes
# ---------------------------------------------------------------------------

class ScriptedSender:
    """Returns scripted (success, error) outcomes in order; the last one repeats."""
    uses_session = True

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def send(self, recipient, content):
        self.calls.append((recipient, content))
        ok, error = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        return SendResult(ok, error)


class SenderFactory:
    """Stand-in for build_senders: one ScriptedSender per channel, reused across builds."""

    def __init__(self):
        self.scripts = {}
        self.senders = {}

    def script(self, channel, *outcomes):
        self.scripts[channel] = list(outcomes)
        self.senders.pop(channel, None)

    def calls(self, channel) -> int:
        sender = self.senders.get(channel)
        return len(sender.calls) if sender else 0

    def __call__(self, db, channels):
        built = {}
        for channel in channels:
            if channel not in self.senders:
                self.senders[channel] = ScriptedSender(self.scripts.get(channel, [(True, None)]))
            built[channel] = self.senders[channel]
        return built


@pytest.fixture
def senders():
    return SenderFactory()
