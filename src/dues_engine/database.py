"""Database connection and session management."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dues_engine.config import get_settings

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def build_engine(database_url: str) -> Engine:
    """Create a database engine for the given URL."""
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)

    return create_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def init_db(engine: Engine | None = None) -> tuple[Engine, sessionmaker[Session]]:
    """Initialize database engine and session factory.

    Passing an engine replaces the global one (used by tests and the CLI).
    """
    global _engine, _session_factory
    if engine is not None or _engine is None:
        _engine = engine or build_engine(get_settings().database_url)
        _session_factory = sessionmaker(
            _engine,
            class_=Session,
            expire_on_commit=False,
            autoflush=False,
        )
    assert _session_factory is not None
    return _engine, _session_factory


def create_schema(engine: Engine | None = None) -> None:
    """Create all tables. Development and tests only; production uses migrations."""
    from dues_engine.models import Base

    target = engine or init_db()[0]
    Base.metadata.create_all(target)


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """Provide a transactional scope: commit on success, roll back on error."""
    if factory is None:
        _, factory = init_db()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def acquire_advisory_lock(session: Session, key: str) -> bool:
    """Acquire a transaction-scoped advisory lock (PostgreSQL only).

    Other dialects have no advisory locks; the caller proceeds unlocked.
    Returns True if the lock was acquired, False if already held.
    """
    if session.get_bind().dialect.name != "postgresql":
        return True
    result = session.execute(
        text("SELECT pg_try_advisory_xact_lock(hashtext(:key))"),
        {"key": key},
    )
    return bool(result.scalar())
