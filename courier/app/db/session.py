"""
Database session configuration.

One async engine per process. PostgreSQL (asyncpg) in deployment, where
transitions rely on SELECT ... FOR UPDATE; SQLite (aiosqlite) is accepted
for local runs and the test suite, which builds its own in-memory engine
and overrides get_db.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from courier.app.core.config import settings


def build_engine(database_url: str = settings.database_url):
    """Async engine for the configured URL; pool sizing only applies off SQLite."""
    options = {"echo": settings.db_echo}
    if make_url(database_url).get_backend_name() != "sqlite":
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
        )
    return create_async_engine(database_url, **options)


engine = build_engine()

# Parcels stay usable after commit: the engine returns them to callers
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db():
    """
    FastAPI dependency for database sessions.

    One session per request. Uncommitted work is discarded when the
    request ends.
    """
    async with AsyncSessionLocal() as session:
        yield session
