"""Alembic migration environment for the billing schema.

The database URL comes from the same settings the worker uses (DATABASE_URL
or .env), falling back to alembic.ini. PostgreSQL runs on asyncpg; SQLite
dev databases run on aiosqlite in batch mode, since SQLite cannot ALTER
most constraints in place.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection

from billing.config import get_settings
from billing.db.session import build_engine
from billing.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    settings = get_settings()
    if "database_url" in settings.model_fields_set:
        return settings.database_url
    return config.get_main_option("sqlalchemy.url")


def _configure(sqlite: bool, **kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        render_as_batch=sqlite,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the billing DDL as SQL to stdout."""
    url = _database_url()
    _configure(url.startswith("sqlite"), url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection.dialect.name == "sqlite", connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    engine = build_engine(_database_url())
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
