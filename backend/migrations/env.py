"""
Alembic environment configuration for async database migrations.

The database URL always comes from application settings and is converted to
its async driver form, so ``alembic upgrade head`` migrates the same database
the service connects to.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from src.core.config import get_settings
from src.core.logging import get_logger
from src.database.base import Base
from src.database.connection import _convert_database_url_to_async

# Import all models to ensure they are registered with Base.metadata
from src.database.models import (  # noqa: F401
    FinancialTransaction,
    Order,
    OrderStatusHistory,
    PlatformSetting,
)

# Alembic Config object provides access to values within the .ini file
config = context.config

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

settings = get_settings()
logger = get_logger(__name__)

target_metadata = Base.metadata

database_url = _convert_database_url_to_async(settings.database_url)
config.set_main_option("sqlalchemy.url", database_url)
logger.info(
    "Database URL configured from environment",
    url_prefix=database_url.split("://")[0],
)


def run_migrations_offline() -> None:
    """
    Run migrations in 'offline' mode, emitting SQL to the script output.
    """
    url = config.get_main_option("sqlalchemy.url")

    logger.info("Running migrations in offline mode", url_prefix=url.split("://")[0])

    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()
    logger.info("Offline migrations completed successfully")


def do_run_migrations(connection: Connection) -> None:
    """
    Execute migrations with the given connection.

    Args:
        connection: SQLAlchemy connection to use for migrations
    """
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        compare_server_default=True,
        transaction_per_migration=True,
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()
    logger.info("Migration execution completed successfully")


async def run_async_migrations() -> None:
    """
    Run migrations in 'online' mode with an async engine.
    """
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = database_url

    connectable = async_engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    try:
        async with connectable.connect() as connection:
            logger.info("Database connection established for migrations")
            await connection.run_sync(do_run_migrations)
    except Exception as e:
        logger.error(
            "Async migration failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await connectable.dispose()


def run_migrations_online() -> None:
    """
    Run migrations in 'online' mode.
    """
    logger.info("Running migrations in online mode")
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
