import asyncio
import logging
import os
import sys
from logging.config import fileConfig

# The catalog's `app` package lives one level above this directory
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_engine_from_config

import app.models  # noqa: F401
from alembic import context
from app.core.config import settings
from app.db.base import Base

config = context.config

# Postgres on a fresh deploy may still be starting when migrations run
CONNECT_ATTEMPTS = 10
MAX_RETRY_DELAY_SECONDS = 10

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

# The repositories table is the only schema we manage
target_metadata = Base.metadata

config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)


def _configure(**kwargs) -> None:
    # Batch mode lets ALTER TABLE work on SQLite
    context.configure(target_metadata=target_metadata, render_as_batch=True, **kwargs)


def run_migrations_offline() -> None:
    """Emit the catalog migrations as SQL without connecting."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Migrate the catalog database, waiting for it to accept connections."""
    engine_kwargs = {}
    if settings.DATABASE_URL.startswith("postgresql"):
        engine_kwargs["connect_args"] = {"connect_timeout": 10}

    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        **engine_kwargs,
    )

    try:
        for attempt in range(1, CONNECT_ATTEMPTS + 1):
            try:
                async with connectable.connect() as connection:
                    await connection.run_sync(_run_with_connection)
                return
            except OperationalError:
                if attempt == CONNECT_ATTEMPTS:
                    logger.error(f"Catalog database unreachable after {CONNECT_ATTEMPTS} attempts")
                    raise
                delay = min(2 ** (attempt - 1), MAX_RETRY_DELAY_SECONDS)
                logger.warning(f"Catalog database not ready (attempt {attempt}/{CONNECT_ATTEMPTS}), retrying in {delay}s")
                await asyncio.sleep(delay)
    finally:
        await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
