"""Alembic environment for the sync state store.

All sync tables live in the "sync" schema; the alembic_version table is
kept there as well so the store migrates independently of anything else
sharing the database.

  alembic upgrade head
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool, text

import src.retail_sync.sync.models  # noqa: F401  (registers the tables)
from src.retail_sync.config import get_settings
from src.retail_sync.core.database import SYNC_SCHEMA, SyncBase

# Alembic Config object
config = context.config

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SyncBase.metadata


def _sync_url() -> str:
    return get_settings().DATABASE_URL.replace("+asyncpg", "")


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=_sync_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table_schema=SYNC_SCHEMA,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    connectable = create_engine(_sync_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        # The schema must exist before Alembic creates its version table there
        connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{SYNC_SCHEMA}"'))
        connection.commit()

        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table_schema=SYNC_SCHEMA,
            include_schemas=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
