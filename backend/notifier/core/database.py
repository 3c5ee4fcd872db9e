"""
Database layer — SQLAlchemy 2.0 engine, sessions and ORM base.

Provides:
    • Engine factory (SQLite for development/tests, PostgreSQL in production)
    • Session factory and a transactional ``session_scope`` helper
    • ``UTCDateTime`` column type so every backend hands back aware UTC datetimes
    • Base model for ORM entities

The engine is synchronous: the dispatcher tick and the delivery workers run
on plain threads, and FastAPI runs the sync route handlers in its
threadpool.

Usage:
    from backend.notifier.core.database import create_db_engine, init_db

    engine = create_db_engine("sqlite:///./notifier.db")
    init_db(engine)
    sessions = create_session_factory(engine)
    with session_scope(sessions) as session:
        session.execute(...)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import DateTime, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from backend.notifier.core.config import Settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


class UTCDateTime(TypeDecorator):
    """
    Store datetimes as naive UTC, return them as aware UTC.

    SQLite has no timezone support; normalising on the way in and out keeps
    comparisons like ``schedule_at <= now`` identical across backends.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"naive datetime not allowed: {value!r}")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


# ── Engine / sessions ──

def create_db_engine(
    url: str,
    *,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
) -> Engine:
    """Create an engine tuned for the URL's backend."""
    if url.startswith("sqlite"):
        kwargs: dict = {
            "connect_args": {"check_same_thread": False, "timeout": 30},
            "echo": echo,
        }
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        echo=echo,
    )


def engine_from_settings(config: Settings) -> Engine:
    return create_db_engine(
        config.DATABASE_URL,
        echo=config.DATABASE_ECHO,
        pool_size=config.DATABASE_POOL_SIZE,
        max_overflow=config.DATABASE_MAX_OVERFLOW,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Yield a session; commit on success, roll back on any error."""
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ── Lifecycle ──

def init_db(engine: Engine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Importing the table module registers the mappers on Base.metadata
    from backend.notifier.scheduling import tables  # noqa: F401

    Base.metadata.create_all(engine)
    logger.info("Database tables initialised (%s)", engine.url.get_backend_name())


def ping(engine: Engine) -> None:
    """Round-trip a trivial query; raises on connection failure."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def close_db(engine: Engine) -> None:
    """Dispose engine connections."""
    engine.dispose()
    logger.info("Database connections closed")
