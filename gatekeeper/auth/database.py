"""
Gatekeeper - Database Configuration

SQLModel database setup with connection pooling.
Supports PostgreSQL (production) and SQLite (development).

Usage:
    from gatekeeper.auth.database import get_engine, init_db

    engine = get_engine()
    init_db(engine)  # Creates tables
"""

from typing import Callable, Optional

from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from gatekeeper.config import settings


def get_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create SQLAlchemy engine with appropriate configuration.

    Args:
        database_url: Override database URL
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    url = database_url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            # One shared connection, or each checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    # PostgreSQL configuration with connection pooling
    return create_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def init_db(engine: Engine) -> None:
    """
    Initialize database tables.

    Safe to call multiple times (uses CREATE IF NOT EXISTS).
    """
    # Import models to register them with SQLModel
    from gatekeeper.auth import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session_factory(engine: Engine) -> Callable[[], Session]:
    """
    Create a session factory bound to engine.

    Returns:
        Callable that creates new database sessions
    """
    def session_factory() -> Session:
        return Session(engine)

    return session_factory
