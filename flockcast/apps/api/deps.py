from __future__ import annotations

from fastapi import Request

from flockcast.services.cache import CacheAside
from flockcast.services.delivery import DeliveryRuntime
from flockcast.services.tenancy import TenantRouter


def get_router(request: Request) -> TenantRouter:
    # The lifespan hook owns one router per process.
    return request.app.state.router


def get_cache_layer(request: Request) -> CacheAside:
    return request.app.state.cache


def get_delivery_runtime(request: Request) -> DeliveryRuntime | None:
    # Set by the lifespan hook in inline mode; queue mode hands jobs to the worker.
    return getattr(request.app.state, "delivery_runtime", None)
