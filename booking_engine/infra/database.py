"""
Database engine for the appointment store.

Writers serialise on the staff row (SELECT ... FOR UPDATE), so every
connection carries a lock_timeout: a writer stuck behind a long
transaction fails with OperationalError, which the SQL store reports as
a retryable DependencyUnavailableError instead of hanging the request.
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from booking_engine.config import Settings, settings
from booking_engine.models.database import Base

logger = logging.getLogger(__name__)


def build_engine(config: Settings) -> AsyncEngine:
    """Create the async engine with per-connection lock and statement limits."""
    return create_async_engine(
        config.database_url,
        echo=config.debug,
        poolclass=NullPool,
        connect_args={
            "server_settings": {
                "lock_timeout": str(config.db_lock_timeout_ms),
                "application_name": config.app_name,
            }
        },
    )


engine = build_engine(settings)

# Sessions never expire loaded rows: records are converted to domain
# objects after the transaction commits.
async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db() -> None:
    """
    Create tables, the btree_gist extension and the no-overlap constraint.

    Development only. Production schemas are managed by migrations.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine on shutdown."""
    await engine.dispose()


async def check_db_health() -> bool:
    """Return True if PostgreSQL answers a trivial query."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False
