"""
Database configuration and session management.
Uses PostgreSQL via asyncpg with SQLAlchemy 2 async engine.
SQLite (aiosqlite) is supported for local development and tests.
"""

import logging
import ssl
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy import text
from gsc_core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def _get_connect_args():
    """Driver options; DATABASE_SSL turns on TLS for asyncpg."""
    url = settings.database_url
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    args = {"timeout": 30}  # Fail fast if DB unreachable
    if settings.database_ssl:
        args["ssl"] = ssl.create_default_context()
    return args


if settings.database_url.startswith("sqlite"):
    engine = create_async_engine(
        settings.database_url,
        echo=False,
        connect_args=_get_connect_args(),
    )
else:
    engine = create_async_engine(
        settings.database_url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        connect_args=_get_connect_args(),
    )

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """Dependency that provides a database session with auto-commit/rollback."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def dialect_insert(db: AsyncSession, table):
    """
    Return an INSERT construct that supports ON CONFLICT for the session's
    backend (PostgreSQL in production, SQLite in development/tests).
    """
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(table)
    if name == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"Upserts are not supported on dialect '{name}'")


async def init_db():
    """
    Create all tables defined in models.
    Uses create_all which is safe — it only creates tables that don't exist yet.
    """
    # Import models to ensure they are registered with Base.metadata
    import gsc_core.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized with {len(Base.metadata.tables)} tables: "
                    f"{', '.join(Base.metadata.tables.keys())}")


async def check_db_connection() -> bool:
    """Test database connectivity."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
