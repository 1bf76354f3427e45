"""Alembic environment for the shipyard schema.

The database URL comes, in order of precedence, from:
1. ``alembic -x url=postgresql://...`` (one-off runs, the test suite)
2. ``sqlalchemy.url`` when set on the Config (programmatic use)
3. the application settings (POSTGRES_* environment variables)

Autogenerate compares column types too: the status columns are native
PostgreSQL enums, and a member added to a Python enum must show up as a
schema change.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from shipyard.models.config import get_settings
from shipyard.models.entities import Base

config = context.config


def database_url() -> str:
    url = context.get_x_argument(as_dictionary=True).get("url") or config.get_main_option("sqlalchemy.url")
    return url or get_settings().database_url_sync


config.set_main_option("sqlalchemy.url", database_url())

# Programmatic callers (tests) pass a Config without a file: keep their logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name, disable_existing_loggers=False)

target_metadata = Base.metadata

COMPARE_OPTIONS = {
    "compare_type": True,
    "compare_server_default": True,
}


def run_migrations_offline() -> None:
    """Emit the SQL without connecting: ``alembic upgrade head --sql``."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **COMPARE_OPTIONS,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations over a single connection."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            # Each migration in its own transaction: an enum type created in
            # one revision can be used by the next
            transaction_per_migration=True,
            **COMPARE_OPTIONS,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
