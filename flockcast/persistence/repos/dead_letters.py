from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from flockcast.domain.models import DeadLetter


async def add_dead_letter(
    session: AsyncSession,
    *,
    category: str,
    payload: dict[str, Any],
    error_message: str,
    tenant_id: str | None = None,
    external_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> DeadLetter:
    row = DeadLetter(
        id=uuid4().hex,
        category=category,
        tenant_id=tenant_id,
        external_id=external_id,
        payload=payload,
        error_message=error_message,
        metadata_json=metadata,
        status="pending",
        retry_count=0,
    )
    session.add(row)
    return row


async def get_dead_letter(session: AsyncSession, dead_letter_id: str) -> DeadLetter | None:
    return await session.get(DeadLetter, dead_letter_id)


async def list_dead_letters(
    session: AsyncSession,
    *,
    status: str = "pending",
    category: str | None = None,
    tenant_id: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[DeadLetter], int]:
    filters = [DeadLetter.status == status]
    if category is not None:
        filters.append(DeadLetter.category == category)
    if tenant_id is not None:
        filters.append(DeadLetter.tenant_id == tenant_id)
    rows = (
        await session.execute(
            select(DeadLetter)
            .where(*filters)
            .order_by(DeadLetter.created_at.asc(), DeadLetter.id.asc())
            .limit(limit)
            .offset(offset)
        )
    ).scalars().all()
    total = (await session.execute(select(func.count()).select_from(DeadLetter).where(*filters))).scalar_one()
    return list(rows), int(total)


def mark_status(row: DeadLetter, status: str, *, metadata: dict[str, Any] | None = None) -> DeadLetter:
    # Merge operator metadata instead of replacing what the worker recorded.
    row.status = status
    if metadata:
        row.metadata_json = {**(row.metadata_json or {}), **metadata}
    return row
