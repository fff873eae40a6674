"""
Database session configuration.

Async SQLAlchemy engine for the ledger. PostgreSQL (asyncpg) in
production; a SQLite URL (aiosqlite) is accepted for local runs of the
job CLI.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from plan_ledger.app.core.config import settings


def _engine_options(database_url: str) -> dict:
    options = {"echo": settings.db_echo}
    # SQLite has no connection pool to size
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
        )
    return options


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

# Ledger transitions are explicit UPDATEs; objects stay usable after commit
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_db():
    """FastAPI dependency: one session per request."""
    async with AsyncSessionLocal() as session:
        yield session
