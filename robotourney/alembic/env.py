"""
Alembic environment configuration for async migrations.

This file is the standard Alembic entry point for CLI commands (alembic upgrade, etc.)
and can also be imported to run migrations programmatically at startup.
"""

from logging.config import fileConfig
import asyncio
import logging
import os
from pathlib import Path
from concurrent.futures import ThreadPoolExecutor
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config
from alembic import context, config as alembic_config, command

# Import all models so Alembic can detect them
from robotourney.database.db import Base, DATABASE_URL
from robotourney.database import models  # noqa: F401

logger = logging.getLogger(__name__)

# Alembic Config object; only available when run by the Alembic CLI
config = None
try:
    config = context.config
    if config.config_file_name is not None:
        fileConfig(config.config_file_name, disable_existing_loggers=False)
except (AttributeError, NameError):
    # Not running via Alembic CLI - that's fine for programmatic use
    pass

# Metadata for autogenerate support
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (generates SQL without connecting)."""
    context.configure(
        url=DATABASE_URL,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    """Execute migrations using the provided connection."""
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations against DATABASE_URL with an async engine."""
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = DATABASE_URL

    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    try:
        async with connectable.connect() as connection:
            await connection.run_sync(do_run_migrations)
        logger.info("Migrations executed successfully")
    except Exception as e:
        logger.error(f"Error during migration execution: {e}", exc_info=True)
        raise
    finally:
        await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (called by Alembic CLI)."""
    logger.info(
        f"Migrating database {DATABASE_URL.split('@')[1] if '@' in DATABASE_URL else 'configured'}"
    )
    asyncio.run(run_async_migrations())


async def run_migrations_online_programmatic() -> None:
    """
    Upgrade to head from application code (called from main.py).

    command.upgrade is synchronous and starts its own event loop, so it runs
    in a worker thread.
    """
    package_dir = Path(__file__).parent.parent
    alembic_ini_path = package_dir / "alembic.ini"
    if not alembic_ini_path.exists():
        raise FileNotFoundError(f"Alembic config file not found: {alembic_ini_path}")

    alembic_cfg = alembic_config.Config(str(alembic_ini_path))
    alembic_cfg.set_main_option("script_location", str(package_dir / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", DATABASE_URL)

    def run_upgrade():
        command.upgrade(alembic_cfg, "head")

    loop = asyncio.get_running_loop()
    with ThreadPoolExecutor() as executor:
        await loop.run_in_executor(executor, run_upgrade)
    logger.info("Migrations completed successfully")


# Alembic CLI entry point
if config is not None:
    if context.is_offline_mode():
        run_migrations_offline()
    else:
        run_migrations_online()
