"""
Database connection and session management with connection pooling.

One async SQLAlchemy engine is shared by the recurrence, work-item and audit
repositories. Sessions commit when the block exits and roll back on error,
so a repository method is one transaction.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from config import settings
from .models import Base

logger = logging.getLogger(__name__)

ASYNC_DRIVER = "postgresql+asyncpg://"


def async_url(database_url: str) -> str:
    """Point a plain postgres URL at the asyncpg driver."""
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return ASYNC_DRIVER + database_url[len(prefix):]
    return database_url


def engine_options(database_url: str) -> Dict[str, Any]:
    """Pool and driver options for create_async_engine."""
    if settings.environment == "test":
        # Connections must not outlive the event loop of a single test
        options: Dict[str, Any] = {"poolclass": NullPool}
    else:
        options = {
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_timeout": settings.db_pool_timeout,
            "pool_recycle": settings.db_pool_recycle,
            "pool_pre_ping": True,
        }

    if database_url.startswith(ASYNC_DRIVER):
        options["connect_args"] = {
            "server_settings": {"application_name": "recurflow", "jit": "off"}
        }
    return options


class Database:
    """Owns the engine and hands out transactional sessions."""

    def __init__(self):
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def ready(self) -> bool:
        return self.session_factory is not None

    async def initialize(self) -> bool:
        """Create the engine and the recurrence, work-item and audit tables."""
        if self.ready:
            return True

        if not settings.database_url:
            logger.warning("DATABASE_URL not configured")
            return False

        url = async_url(settings.database_url)
        options = engine_options(url)
        logger.info(
            f"Connecting to database (pool_size={options.get('pool_size', 'null')}, "
            f"max_overflow={options.get('max_overflow', 0)})"
        )

        try:
            engine = create_async_engine(url, echo=settings.database_echo, **options)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            return False

        self.engine = engine
        self.session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database initialized")
        return True

    async def close(self):
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connection closed")
        self.engine = None
        self.session_factory = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session that commits on exit and rolls back on error."""
        if not self.ready and not await self.initialize():
            raise RuntimeError("Database not initialized")

        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Database session error: {e}")
                raise


# Singleton instance
_database: Optional[Database] = None


def get_database() -> Database:
    """Get the database singleton."""
    global _database
    if _database is None:
        _database = Database()
    return _database


async def init_database() -> bool:
    return await get_database().initialize()


async def close_database():
    global _database
    if _database:
        await _database.close()
        _database = None
