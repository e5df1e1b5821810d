from __future__ import annotations

import json

import pytest

from flockcast.core.errors import TenantNotFoundError
from flockcast.services import cache_keys
from flockcast.services.cache import CacheAside
from flockcast.services.plans import PLAN_LIMITS, UNLIMITED_REMAINING, get_plan_summary
from flockcast.services.tenancy import SqlAlchemyHandleFactory, TenantDirectory, TenantRouter
from flockcast.tests.utils.fakes import StubRedis
from flockcast.tests.utils.tenants import seed_recipient, seed_tenant


@pytest.mark.asyncio
async def test_plan_summary_counts_this_months_recipients(tenant_db_dir: str) -> None:
    tenant = await seed_tenant(db_dir=tenant_db_dir, plan="starter")
    for _ in range(3):
        await seed_recipient(tenant.connection_url)
    redis = StubRedis()
    cache = CacheAside(redis=redis, prefix="test", ttl_jitter_s=0, enabled=True)
    router = TenantRouter(TenantDirectory(), SqlAlchemyHandleFactory())

    summary = await get_plan_summary(router, tenant.id, cache=cache)
    await cache.flush_pending_writes()
    await router.close()

    assert summary["plan"] == "starter"
    assert summary["limits"] == PLAN_LIMITS["starter"]
    assert summary["usage"] == {"messages_this_month": 3}
    assert summary["remaining"] == {"messages_per_month": 997}
    cached_usage = json.loads(redis.store[f"test:{cache_keys.tenant_usage(tenant.id)}"])
    assert cached_usage["by_status"] == {"pending": 3}
    assert redis.ttls[f"test:{cache_keys.tenant_plan(tenant.id)}"] == cache_keys.TTL_MEDIUM


@pytest.mark.asyncio
async def test_large_limits_are_reported_as_unlimited(tenant_db_dir: str) -> None:
    tenant = await seed_tenant(db_dir=tenant_db_dir, plan="pro")
    router = TenantRouter(TenantDirectory(), SqlAlchemyHandleFactory())

    summary = await get_plan_summary(router, tenant.id, cache=CacheAside(enabled=False))
    await router.close()

    assert summary["remaining"]["messages_per_month"] == UNLIMITED_REMAINING


@pytest.mark.asyncio
async def test_unknown_tenant_plan_summary_raises() -> None:
    router = TenantRouter(TenantDirectory(), SqlAlchemyHandleFactory())
    with pytest.raises(TenantNotFoundError):
        await get_plan_summary(router, "missing", cache=CacheAside(enabled=False))
