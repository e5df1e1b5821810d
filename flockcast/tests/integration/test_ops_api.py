from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from flockcast.apps.api.main import create_app
from flockcast.persistence.db import SessionLocal
from flockcast.persistence.repos import dead_letters as dead_letters_repo
from flockcast.providers.messaging import FakeMessagingProvider
from flockcast.services.cache import CacheAside
from flockcast.services.delivery import DeliveryJobPayload, DeliveryRuntime
from flockcast.services.tenancy import SqlAlchemyHandleFactory, TenantDirectory, TenantRouter
from flockcast.tests.utils.fakes import FakeHandleFactory, StubRedis
from flockcast.tests.utils.tenants import read_recipient, seed_recipient, seed_tenant


def _app(router: TenantRouter, cache: CacheAside):
    return create_app(tenant_router=router, cache=cache)


@pytest.mark.asyncio
async def test_health_and_connection_stats() -> None:
    tenant = await seed_tenant()
    cache = CacheAside(enabled=False)
    router = TenantRouter(TenantDirectory(cache=cache), FakeHandleFactory(), max_total_connections=3)
    await router.acquire(tenant.id)
    app = _app(router, cache)

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            health = await client.get("/health")
            stats = await client.get("/ops/tenants/connections")

    assert health.json() == {"status": "ok"}
    body = stats.json()
    assert body["handles"] == 1
    assert body["max_total_connections"] == 3
    assert body["tenants"][0]["tenant_id"] == tenant.id
    # Lifespan shutdown closes the router.
    assert router.stats()["closed"] is True


@pytest.mark.asyncio
async def test_evict_endpoint_drops_handle_and_cache() -> None:
    tenant = await seed_tenant()
    redis = StubRedis()
    redis.store[f"test:tenant:{tenant.id}:outbound"] = "{}"
    cache = CacheAside(redis=redis, prefix="test", enabled=True)
    router = TenantRouter(TenantDirectory(cache=cache), FakeHandleFactory())
    await router.acquire(tenant.id)
    app = _app(router, cache)

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(f"/ops/tenants/{tenant.id}/evict")
            again = await client.post(f"/ops/tenants/{tenant.id}/evict")

    assert response.json() == {"tenant_id": tenant.id, "evicted": True, "cache_keys_removed": 1}
    assert again.json()["evicted"] is False


@pytest.mark.asyncio
async def test_queue_and_cache_endpoints() -> None:
    cache = CacheAside(redis=StubRedis(), prefix="test", enabled=True)
    router = TenantRouter(TenantDirectory(cache=cache), FakeHandleFactory())
    app = _app(router, cache)

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            queue = await client.get("/ops/queue")
            cache_view = await client.get("/ops/cache")

    assert queue.status_code == 200
    assert queue.json()["mode"] == "inline"
    assert "provider_breaker" in queue.json()
    assert cache_view.json()["enabled"] is True
    assert cache_view.json()["connected"] is True


@pytest.mark.asyncio
async def test_dead_letter_list_and_replay(tenant_db_dir: str) -> None:
    tenant = await seed_tenant(db_dir=tenant_db_dir)
    recipient_id = await seed_recipient(tenant.connection_url)
    payload = DeliveryJobPayload(
        tenant_id=tenant.id,
        phone="+15551234567",
        content="Hello",
        recipient_id=recipient_id,
        attempt=3,
        max_attempts=3,
    )
    async with SessionLocal() as session:
        row = await dead_letters_repo.add_dead_letter(
            session,
            category="sms_send",
            payload=payload.model_dump(mode="json"),
            error_message="Tenant database unreachable",
            tenant_id=tenant.id,
            external_id=payload.job_id,
        )
        await session.commit()
        dead_letter_id = row.id

    provider = FakeMessagingProvider(outcomes=["PMSG-R"])
    cache = CacheAside(enabled=False)
    router = TenantRouter(TenantDirectory(cache=cache), SqlAlchemyHandleFactory())
    runtime = DeliveryRuntime.build(provider=provider, router=router, cache=cache)
    app = create_app(delivery_runtime=runtime)

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            listed = await client.get("/ops/dead-letters", params={"tenant_id": tenant.id})
            invalid = await client.get("/ops/dead-letters", params={"status": "bogus"})
            replayed = await client.post(f"/ops/dead-letters/{dead_letter_id}/replay")
            repeat = await client.post(f"/ops/dead-letters/{dead_letter_id}/replay")
            missing = await client.post("/ops/dead-letters/nope/replay")
            connections = await client.get("/ops/tenants/connections")

    assert listed.json()["total"] == 1
    assert listed.json()["items"][0]["id"] == dead_letter_id
    assert invalid.status_code == 422
    assert replayed.status_code == 200
    assert replayed.json()["status"] == "resolved"
    assert [send.to for send in provider.sends] == ["+15551234567"]
    assert repeat.status_code == 409
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
    # The replay wrote its outcome through the API process's own router.
    assert app.state.router is router
    assert [item["tenant_id"] for item in connections.json()["tenants"]] == [tenant.id]
    row = await read_recipient(tenant.connection_url, recipient_id)
    assert row.provider_message_id == "PMSG-R"


@pytest.mark.asyncio
async def test_inline_mode_replays_share_the_app_router() -> None:
    cache = CacheAside(enabled=False)
    router = TenantRouter(TenantDirectory(cache=cache), FakeHandleFactory())
    app = _app(router, cache)

    async with app.router.lifespan_context(app):
        runtime = app.state.delivery_runtime
        assert runtime.router is router
        assert runtime.cache is cache
    assert router.stats()["closed"] is True
