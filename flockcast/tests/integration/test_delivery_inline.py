from __future__ import annotations

import pytest

from flockcast.core.errors import ProviderError
from flockcast.providers.messaging import FakeMessagingProvider
from flockcast.services.cache import CacheAside
from flockcast.services.delivery import DeliveryJobPayload, DeliveryRuntime, enqueue_delivery_job, queue_status
from flockcast.services.delivery.queue import schedule_delivery_job
from flockcast.services.delivery.runtime import set_inline_runtime
from flockcast.services.tenancy import SqlAlchemyHandleFactory, TenantDirectory, TenantRouter
from flockcast.tests.utils.tenants import read_recipient, seed_recipient, seed_tenant
from flockcast.workers.delivery_worker import send_message


def _runtime(provider: FakeMessagingProvider) -> DeliveryRuntime:
    cache = CacheAside(enabled=False)
    router = TenantRouter(TenantDirectory(cache=cache), SqlAlchemyHandleFactory(), max_total_connections=4)
    return DeliveryRuntime.build(provider=provider, router=router, cache=cache)


@pytest.mark.asyncio
async def test_inline_enqueue_runs_retries_to_completion(tenant_db_dir: str) -> None:
    tenant = await seed_tenant(db_dir=tenant_db_dir)
    recipient_id = await seed_recipient(tenant.connection_url)
    provider = FakeMessagingProvider(outcomes=[ProviderError("timeout"), "PMSG-77"])
    runtime = _runtime(provider)
    set_inline_runtime(runtime)

    payload = DeliveryJobPayload(tenant_id=tenant.id, phone="+15551234567", content="Hello", recipient_id=recipient_id)
    job_id = await enqueue_delivery_job(payload)
    await runtime.aclose()

    assert job_id == payload.job_id
    assert len(provider.sends) == 2
    row = await read_recipient(tenant.connection_url, recipient_id)
    assert row.provider_message_id == "PMSG-77"
    assert row.status == "pending"


@pytest.mark.asyncio
async def test_many_tenants_share_a_small_connection_budget(tenant_db_dir: str) -> None:
    tenants = [await seed_tenant(db_dir=tenant_db_dir) for _ in range(6)]
    recipients = {tenant.id: await seed_recipient(tenant.connection_url) for tenant in tenants}
    provider = FakeMessagingProvider()
    runtime = _runtime(provider)

    for tenant in tenants:
        payload = DeliveryJobPayload(
            tenant_id=tenant.id,
            phone="+15551234567",
            content="Weekly update",
            recipient_id=recipients[tenant.id],
        )
        await enqueue_delivery_job(payload, runtime=runtime)
        assert runtime.router.stats()["connections_in_use"] <= 4
    await runtime.aclose()

    for tenant in tenants:
        row = await read_recipient(tenant.connection_url, recipients[tenant.id])
        assert row.provider_message_id is not None


@pytest.mark.asyncio
async def test_worker_job_function_validates_and_processes(tenant_db_dir: str) -> None:
    tenant = await seed_tenant(db_dir=tenant_db_dir)
    recipient_id = await seed_recipient(tenant.connection_url)
    runtime = _runtime(FakeMessagingProvider(outcomes=["PMSG-5"]))
    ctx = {"job_id": "job-1", "processor": runtime.processor_for(schedule_delivery_job)}

    rejected = await send_message(ctx, {"tenant_id": tenant.id, "phone": "555"})
    accepted = await send_message(
        ctx,
        DeliveryJobPayload(
            tenant_id=tenant.id, phone="+15551234567", content="Hi", recipient_id=recipient_id
        ).model_dump(mode="json"),
    )
    await runtime.aclose()

    assert rejected["state"] == "rejected"
    assert accepted["state"] == "delivered_attempted"
    assert accepted["provider_message_id"] == "PMSG-5"


@pytest.mark.asyncio
async def test_inline_queue_status_reports_no_worker() -> None:
    status = await queue_status()
    assert status["mode"] == "inline"
    assert status["depth"] == 0
    assert status["worker_alive"] is False
