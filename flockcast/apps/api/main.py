from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from flockcast.apps.api.errors import flockcast_exception_handler
from flockcast.apps.api.routes.health import router as health_router
from flockcast.apps.api.routes.ops import router as ops_router
from flockcast.core.errors import FlockcastError
from flockcast.core.logging import configure_logging
from flockcast.services.cache import CacheAside, get_cache
from flockcast.services.delivery import DeliveryRuntime
from flockcast.services.delivery.queue import is_inline_mode
from flockcast.services.tenancy import SqlAlchemyHandleFactory, TenantDirectory, TenantRouter


def create_app(
    *,
    tenant_router: TenantRouter | None = None,
    cache: CacheAside | None = None,
    delivery_runtime: DeliveryRuntime | None = None,
) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # One router per process; shutdown disposes every cached tenant handle.
        runtime = delivery_runtime
        if runtime is not None:
            app.state.cache = cache or runtime.cache
            app.state.router = tenant_router or runtime.router
        else:
            app.state.cache = cache or get_cache()
            app.state.router = tenant_router or TenantRouter(
                TenantDirectory(cache=app.state.cache),
                SqlAlchemyHandleFactory(),
            )
        if runtime is None and is_inline_mode():
            # Inline replays run here and must draw on this process's connection budget.
            runtime = DeliveryRuntime.build(router=app.state.router, cache=app.state.cache)
        app.state.delivery_runtime = runtime
        try:
            yield
        finally:
            if runtime is not None:
                await runtime.aclose()
            await app.state.router.close()
            await app.state.cache.flush_pending_writes()

    app = FastAPI(title="Flockcast Ops API", lifespan=lifespan)
    app.add_exception_handler(FlockcastError, flockcast_exception_handler)
    app.include_router(health_router)
    app.include_router(ops_router)
    return app


app = create_app()
