"""Database base class and session management.

This module provides:
- SQLAlchemy base class for declarative models
- Engine and session factory for the tutor database
- Table creation and shutdown helpers
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ..core.config import get_settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


_engine = None
_session_maker = None


def build_engine(url: str, echo: bool = False, **pool_kwargs) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    SQLite connections open every transaction with BEGIN IMMEDIATE.
    SAVEPOINTs then nest inside it, and concurrent writers queue on the busy
    timeout rather than failing a read-to-write lock upgrade.
    """
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_async_engine(url, echo=echo, **pool_kwargs)


def get_engine():
    """Get or create the tutor database engine."""
    global _engine

    if _engine is None:
        settings = get_settings()
        _engine = build_engine(
            settings.DATABASE_URL,
            echo=settings.DEBUG,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
        )

    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the tutor session maker."""
    global _session_maker

    if _session_maker is None:
        engine = get_engine()
        _session_maker = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    return _session_maker


async def init_database(engine=None):
    """Create all tables."""
    from . import models  # noqa: F401  (registers tables on Base.metadata)

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_all():
    """Close all database connections."""
    global _engine, _session_maker

    if _engine:
        await _engine.dispose()
        _engine = None

    _session_maker = None
