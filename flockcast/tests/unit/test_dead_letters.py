from __future__ import annotations

import pytest

from flockcast.core.errors import DeadLetterNotFoundError, DeadLetterStateError
from flockcast.persistence.db import SessionLocal
from flockcast.persistence.repos import dead_letters as dead_letters_repo
from flockcast.services.delivery import DeliveryJobPayload
from flockcast.services.delivery import dead_letters as dead_letter_service


async def _seed(payload: dict, *, tenant_id: str = "t1") -> str:
    async with SessionLocal() as session:
        row = await dead_letters_repo.add_dead_letter(
            session,
            category="sms_send",
            payload=payload,
            error_message="Tenant database unreachable",
            tenant_id=tenant_id,
            external_id=payload.get("job_id"),
        )
        await session.commit()
        return row.id


def _job(**kwargs) -> DeliveryJobPayload:
    return DeliveryJobPayload(tenant_id="t1", phone="+15551234567", content="Hello", **kwargs)


@pytest.mark.asyncio
async def test_list_filters_by_status_and_tenant() -> None:
    await _seed(_job().model_dump(mode="json"))
    await _seed(_job().model_dump(mode="json"), tenant_id="t2")
    resolved_id = await _seed(_job().model_dump(mode="json"))
    await dead_letter_service.resolve_dead_letter(resolved_id, note="handled manually")

    items, total = await dead_letter_service.list_dead_letters(tenant_id="t1")
    assert total == 1
    assert items[0]["tenant_id"] == "t1"

    resolved, _ = await dead_letter_service.list_dead_letters(status="resolved")
    assert resolved[0]["metadata"]["note"] == "handled manually"

    with pytest.raises(ValueError):
        await dead_letter_service.list_dead_letters(status="bogus")


@pytest.mark.asyncio
async def test_replay_enqueues_a_fresh_attempt_budget() -> None:
    original = _job(attempt=3, max_attempts=3)
    dead_letter_id = await _seed(original.model_dump(mode="json"))
    enqueued: list[DeliveryJobPayload] = []

    async def enqueue(payload: DeliveryJobPayload) -> str:
        enqueued.append(payload)
        return payload.job_id

    row = await dead_letter_service.replay_dead_letter(dead_letter_id, enqueue=enqueue)

    assert enqueued[0].attempt == 0
    assert enqueued[0].job_id == f"{original.job_id}-r1"
    assert enqueued[0].phone == original.phone
    assert row["status"] == "resolved"
    assert row["retry_count"] == 1
    assert row["metadata"]["replayed_job_id"] == f"{original.job_id}-r1"

    with pytest.raises(DeadLetterStateError):
        await dead_letter_service.replay_dead_letter(dead_letter_id, enqueue=enqueue)


@pytest.mark.asyncio
async def test_replay_rejects_missing_and_invalid_rows() -> None:
    async def enqueue(payload: DeliveryJobPayload) -> str:
        raise AssertionError("must not enqueue")

    with pytest.raises(DeadLetterNotFoundError):
        await dead_letter_service.replay_dead_letter("missing", enqueue=enqueue)

    broken_id = await _seed({"job_id": "j-1", "phone": "not-a-number"})
    with pytest.raises(DeadLetterStateError):
        await dead_letter_service.replay_dead_letter(broken_id, enqueue=enqueue)


@pytest.mark.asyncio
async def test_resolve_only_accepts_terminal_statuses() -> None:
    dead_letter_id = await _seed(_job().model_dump(mode="json"))
    with pytest.raises(DeadLetterStateError):
        await dead_letter_service.resolve_dead_letter(dead_letter_id, status="pending")
    row = await dead_letter_service.resolve_dead_letter(dead_letter_id, status="dead")
    assert row["status"] == "dead"
