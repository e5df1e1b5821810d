from __future__ import annotations

import asyncio

from alembic import context
from sqlalchemy.engine import Connection

from flockcast.core.config import get_settings
from flockcast.domain.models import RegistryBase
from flockcast.persistence.db import create_registry_engine


# Migrations here target the shared registry; tenant databases get their schema at provisioning.
target_metadata = RegistryBase.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=get_settings().registry_database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_registry_engine()
    async with engine.connect() as connection:
        await connection.run_sync(_run_sync)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
