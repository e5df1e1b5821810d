from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from flockcast.apps.api.deps import get_cache_layer, get_delivery_runtime, get_router
from flockcast.providers.messaging.telnyx import INTEGRATION as TELNYX_INTEGRATION
from flockcast.services.cache import CacheAside
from flockcast.services.delivery import DeliveryJobPayload, DeliveryRuntime
from flockcast.services.delivery import dead_letters as dead_letter_service
from flockcast.services.delivery.queue import enqueue_delivery_job, queue_status
from flockcast.services.resilience import get_circuit_breaker_state
from flockcast.services.telemetry import counters_snapshot, external_latency_by_integration
from flockcast.services.tenancy import TenantRouter


router = APIRouter(prefix="/ops", tags=["ops"])


class DeadLetterListResponse(BaseModel):
    items: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


class EvictResponse(BaseModel):
    tenant_id: str
    evicted: bool
    cache_keys_removed: int


@router.get("/tenants/connections")
async def tenant_connections(tenant_router: TenantRouter = Depends(get_router)) -> dict[str, Any]:
    return tenant_router.stats()


@router.post("/tenants/{tenant_id}/evict", response_model=EvictResponse)
async def evict_tenant(
    tenant_id: str,
    tenant_router: TenantRouter = Depends(get_router),
    cache: CacheAside = Depends(get_cache_layer),
) -> EvictResponse:
    # Drop the cached handle and every cached projection so the next read hits the registry.
    evicted = await tenant_router.evict(tenant_id)
    removed = await cache.invalidate_tenant(tenant_id)
    return EvictResponse(tenant_id=tenant_id, evicted=evicted, cache_keys_removed=removed)


@router.get("/queue")
async def queue() -> dict[str, Any]:
    status = await queue_status()
    status["provider_breaker"] = await get_circuit_breaker_state(TELNYX_INTEGRATION)
    status["provider_latency"] = external_latency_by_integration(window_s=300)
    return status


@router.get("/cache")
async def cache_status(cache: CacheAside = Depends(get_cache_layer)) -> dict[str, Any]:
    stats = await cache.cache_stats()
    counters = counters_snapshot()
    stats["race_primary_failures"] = counters.get("race_primary_failed_total.cache", 0)
    return stats


@router.get("/dead-letters", response_model=DeadLetterListResponse)
async def dead_letters(
    status: str = Query(default="pending", pattern="^(pending|resolved|dead)$"),
    tenant_id: str | None = None,
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> DeadLetterListResponse:
    items, total = await dead_letter_service.list_dead_letters(
        status=status,
        tenant_id=tenant_id,
        limit=limit,
        offset=offset,
    )
    return DeadLetterListResponse(items=items, total=total, limit=limit, offset=offset)


@router.post("/dead-letters/{dead_letter_id}/replay")
async def replay_dead_letter(
    dead_letter_id: str,
    runtime: DeliveryRuntime | None = Depends(get_delivery_runtime),
) -> dict[str, Any]:
    async def _enqueue(payload: DeliveryJobPayload) -> str:
        return await enqueue_delivery_job(payload, runtime=runtime)

    return await dead_letter_service.replay_dead_letter(dead_letter_id, enqueue=_enqueue)
