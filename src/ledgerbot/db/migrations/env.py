"""Alembic environment for the ledger schema.

The URL comes from ``Settings().database_url`` unless overridden on the
command line with ``alembic -x db_url=... upgrade head``.  Online migrations
run through the same :class:`~ledgerbot.db.session.Database` engine the bot
uses.
"""

import asyncio
from logging.config import fileConfig

from alembic import context

from ledgerbot.config import Settings
from ledgerbot.db.session import Database

# Every table lives on this metadata.
from ledgerbot.ledger.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    override = context.get_x_argument(as_dictionary=True).get("db_url")
    return override or Settings().database_url


def run_migrations_offline() -> None:
    """Emit SQL to the script output without connecting."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    database = Database(_database_url())
    try:
        async with database.engine.connect() as connection:
            await connection.run_sync(_run_with_connection)
    finally:
        await database.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
