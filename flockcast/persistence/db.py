from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from flockcast.core.config import get_settings


def engine_kwargs(
    url: str,
    *,
    pool_size: int,
    max_overflow: int,
    statement_timeout_ms: int = 0,
) -> dict[str, Any]:
    # Configure bounded asyncpg pools for predictable latency; SQLite ignores pool sizing.
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        return kwargs
    kwargs["pool_size"] = max(1, int(pool_size))
    kwargs["max_overflow"] = max(0, int(max_overflow))
    kwargs["pool_timeout"] = 30
    kwargs["pool_recycle"] = 1800
    if statement_timeout_ms > 0:
        kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(statement_timeout_ms))}
        }
    return kwargs


def create_registry_engine(url: str | None = None) -> AsyncEngine:
    settings = get_settings()
    resolved = url or settings.registry_database_url
    return create_async_engine(
        resolved,
        **engine_kwargs(
            resolved,
            pool_size=settings.registry_db_pool_size,
            max_overflow=settings.registry_db_max_overflow,
            statement_timeout_ms=settings.registry_db_statement_timeout_ms,
        ),
    )


engine = create_registry_engine()
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats(target: AsyncEngine | None = None) -> dict[str, int | None]:
    # Expose pool counters for ops visibility without querying Postgres internals.
    pool = (target or engine).sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
