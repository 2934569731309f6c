"""Migrations for the meetings database.

The database URL comes from ``Settings`` unless overridden on the command
line with ``alembic -x database_url=...``.
"""

import asyncio
from logging.config import fileConfig

from alembic import context

from app.config import Settings
from app.database import Base, build_engine

import app.tenancy.models  # noqa: F401
import app.auth.models  # noqa: F401
import app.activity.models  # noqa: F401
import app.meetings.models  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

settings = Settings()
database_url = context.get_x_argument(as_dictionary=True).get("database_url", settings.database_url)


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        render_as_batch="sqlite" in database_url,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of touching a database."""
    _configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = build_engine(database_url, settings.sqlite_busy_timeout)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_run_with_connection)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
