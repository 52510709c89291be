"""
Alembic environment. Loads DATABASE_URL from gsc_core config.
Uses the same async driver as the app (asyncpg, or aiosqlite for local dev).
"""

import asyncio
import os
import ssl
from logging.config import fileConfig

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool
from alembic import context

os.environ.setdefault("ENVIRONMENT", "development")
from gsc_core.config import get_settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

settings = get_settings()
config.set_main_option("sqlalchemy.url", settings.database_url)

# Import models for autogenerate
from gsc_core.database import Base
import gsc_core.models  # noqa: F401

target_metadata = Base.metadata

_IS_SQLITE = settings.database_url.startswith("sqlite")


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=_IS_SQLITE,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    # SQLite cannot ALTER most constraints in place
    context.configure(connection=connection, target_metadata=target_metadata, render_as_batch=_IS_SQLITE)
    with context.begin_transaction():
        context.run_migrations()


def _get_connect_args():
    if _IS_SQLITE:
        return {}
    url = config.get_main_option("sqlalchemy.url", "")
    args = {"timeout": 30}
    if "rlwy.net" in url:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        args["ssl"] = ctx
    return args


def run_migrations_online() -> None:
    connectable = create_async_engine(
        config.get_main_option("sqlalchemy.url"),
        poolclass=NullPool,
        connect_args=_get_connect_args(),
    )

    async def run_async():
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
        await connectable.dispose()

    asyncio.run(run_async())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
