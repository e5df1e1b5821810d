from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flockcast.core.errors import DeadLetterNotFoundError, DeadLetterStateError
from flockcast.domain.models import DeadLetter
from flockcast.persistence.db import SessionLocal
from flockcast.persistence.repos import dead_letters as dead_letters_repo
from flockcast.services.delivery.payload import DeliveryJobPayload


logger = logging.getLogger(__name__)

DEAD_LETTER_STATUSES = ("pending", "resolved", "dead")


def serialize_dead_letter(row: DeadLetter) -> dict[str, Any]:
    return {
        "id": row.id,
        "category": row.category,
        "tenant_id": row.tenant_id,
        "external_id": row.external_id,
        "status": row.status,
        "error_message": row.error_message,
        "retry_count": row.retry_count,
        "payload": row.payload,
        "metadata": row.metadata_json or {},
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def list_dead_letters(
    *,
    status: str = "pending",
    tenant_id: str | None = None,
    limit: int = 20,
    offset: int = 0,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> tuple[list[dict[str, Any]], int]:
    if status not in DEAD_LETTER_STATUSES:
        raise ValueError(f"Unknown dead letter status: {status}")
    async with (session_factory or SessionLocal)() as session:
        rows, total = await dead_letters_repo.list_dead_letters(
            session,
            status=status,
            tenant_id=tenant_id,
            limit=limit,
            offset=offset,
        )
        return [serialize_dead_letter(row) for row in rows], total


async def resolve_dead_letter(
    dead_letter_id: str,
    *,
    status: str = "resolved",
    note: str | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    if status not in ("resolved", "dead"):
        raise DeadLetterStateError(f"Cannot mark a dead letter {status}")
    async with (session_factory or SessionLocal)() as session:
        row = await dead_letters_repo.get_dead_letter(session, dead_letter_id)
        if row is None:
            raise DeadLetterNotFoundError(f"Dead letter {dead_letter_id} not found")
        metadata = {"resolved_at": datetime.now(timezone.utc).isoformat()}
        if note:
            metadata["note"] = note
        dead_letters_repo.mark_status(row, status, metadata=metadata)
        await session.commit()
        await session.refresh(row)
        return serialize_dead_letter(row)


async def replay_dead_letter(
    dead_letter_id: str,
    *,
    enqueue: Callable[[DeliveryJobPayload], Awaitable[str]],
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """Re-enqueue a dead-lettered delivery with a fresh attempt budget."""
    sessions = session_factory or SessionLocal
    async with sessions() as session:
        row = await dead_letters_repo.get_dead_letter(session, dead_letter_id)
        if row is None:
            raise DeadLetterNotFoundError(f"Dead letter {dead_letter_id} not found")
        if row.status != "pending":
            raise DeadLetterStateError(f"Dead letter {dead_letter_id} is {row.status}")
        try:
            original = DeliveryJobPayload.model_validate(row.payload)
        except ValidationError as exc:
            raise DeadLetterStateError(f"Dead letter {dead_letter_id} has an invalid payload") from exc
        replay_number = row.retry_count + 1

    replay = original.model_copy(
        update={
            "job_id": f"{original.job_id}-r{replay_number}",
            "attempt": 0,
            "enqueued_at": datetime.now(timezone.utc),
        }
    )
    # Enqueue outside the registry session; inline mode may write its own dead letter.
    job_id = await enqueue(replay)

    async with sessions() as session:
        row = await dead_letters_repo.get_dead_letter(session, dead_letter_id)
        row.retry_count = replay_number
        dead_letters_repo.mark_status(row, "resolved", metadata={"replayed_job_id": job_id})
        await session.commit()
        await session.refresh(row)
        logger.info("dead_letter_replayed id=%s job_id=%s", dead_letter_id, job_id)
        return serialize_dead_letter(row)
