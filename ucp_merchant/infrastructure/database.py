"""Database configuration and session management.

Provides the declarative base and a factory for the async SQLAlchemy
engine and session maker.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

# Base class for models
Base = declarative_base()


def create_engine_and_session_factory(
    database_url: str,
    echo: bool = False,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create async engine and session factory.

    Args:
        database_url: SQLAlchemy async URL, e.g. ``sqlite+aiosqlite:///./db.sqlite``.
        echo: Log emitted SQL.

    Returns:
        Tuple of (engine, session factory).
    """
    kwargs: dict = {"echo": echo}
    if not database_url.startswith("sqlite"):
        kwargs["pool_pre_ping"] = True
    engine = create_async_engine(database_url, **kwargs)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory
