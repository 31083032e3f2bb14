"""
Engine and session wiring.

The engine is built lazily from settings on first use so that importing
the models (tests, alembic) never opens a connection. Request handlers
get a session through get_db; background jobs call get_session_factory
and close their own sessions.
"""
import psycopg
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from followup.config import get_settings


class Base(DeclarativeBase):
    """Declarative base shared by every table in followup."""


_state = {"engine": None, "factory": None}


def get_engine():
    """Return the process-wide engine, creating it from DATABASE_URL."""
    if _state["engine"] is None:
        _state["engine"] = create_engine(get_settings().get_sqlalchemy_url(), pool_pre_ping=True)
    return _state["engine"]


def get_session_factory():
    """Return the sessionmaker bound to the process-wide engine."""
    if _state["factory"] is None:
        _state["factory"] = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)
    return _state["factory"]


def get_db() -> Session:
    # One session per request, closed even when the handler raises.
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


def check_db_connection() -> None:
    """
    Run a trivial query over a fresh driver connection.

    Used by the readiness endpoint; lets psycopg.OperationalError
    propagate when the database cannot be reached within three seconds.
    """
    dsn = get_settings().DATABASE_URL.replace("postgres://", "postgresql://", 1)
    with psycopg.connect(dsn, connect_timeout=3) as conn, conn.cursor() as cur:
        cur.execute("SELECT 1")
        cur.fetchone()
