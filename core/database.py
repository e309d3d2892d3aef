"""
Database session management with SQLAlchemy async
"""

from typing import Optional
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from core.config import settings
from models.base import Base
import logging

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


def get_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create the async engine on first use"""
    global _engine

    if _engine is None or database_url is not None:
        _engine = create_async_engine(
            database_url or settings.DATABASE_URL,
            echo=settings.ENVIRONMENT == "development",
            poolclass=NullPool,  # For async, connection pooling handled differently
            future=True
        )
    return _engine


def get_session_maker(engine: Optional[AsyncEngine] = None) -> async_sessionmaker:
    """Session factory bound to the given (or default) engine"""
    global _session_maker

    if engine is not None:
        return async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )

    if _session_maker is None:
        _session_maker = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )
    return _session_maker


async def get_session() -> AsyncSession:
    """Get database session"""
    async with get_session_maker()() as session:
        yield session


async def create_tables(engine: Optional[AsyncEngine] = None):
    """Create all tables registered on the declarative base"""
    # Import models so they register on Base.metadata
    from models.checkpoint import ImportCheckpoint  # noqa: F401
    from models.deferred_operation import DeferredOperation  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Sync tables created")
