"""Async SQLAlchemy engine and session factory.

One engine with connection pooling, one AsyncSession per request via
FastAPI dependency injection. Closing the session rolls back whatever
transaction is still open, so a cancelled request leaves no partial
writes behind.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from crm.config import settings

# Connection pool: min 5, max 20 connections (PostgreSQL).
# SQLite picks its own pool class.
_pool_args = (
    {}
    if settings.database_url.startswith("sqlite")
    else {"pool_size": 5, "max_overflow": 15}
)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_pool_args,
)

# Session factory: each request gets its own session.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncSession:
    """FastAPI dependency — yields a session per request, auto-closes."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
