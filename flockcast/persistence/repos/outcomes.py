from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from flockcast.domain.models import ConversationMessage, MessageRecipient
from flockcast.domain.state import OUTCOME_FAILED, OUTCOME_PENDING, TERMINAL_OUTCOMES


async def _apply(
    session: AsyncSession,
    *,
    recipient_id: str | None,
    conversation_message_id: str | None,
    values: dict[str, Any],
) -> int:
    # Terminal rows are never overwritten; the guard lives in the WHERE clause.
    updated = 0
    if recipient_id:
        result = await session.execute(
            update(MessageRecipient)
            .where(
                MessageRecipient.id == recipient_id,
                MessageRecipient.status.notin_(TERMINAL_OUTCOMES),
            )
            .values(**values)
        )
        updated += result.rowcount or 0
    if conversation_message_id:
        conversation_values = dict(values)
        if "status" in conversation_values:
            conversation_values["delivery_status"] = conversation_values.pop("status")
        result = await session.execute(
            update(ConversationMessage)
            .where(
                ConversationMessage.id == conversation_message_id,
                ConversationMessage.delivery_status.notin_(TERMINAL_OUTCOMES),
            )
            .values(**conversation_values)
        )
        updated += result.rowcount or 0
    return updated


async def record_accepted(
    session: AsyncSession,
    *,
    recipient_id: str | None,
    conversation_message_id: str | None,
    provider_message_id: str,
    channel: str,
    attempt: int,
) -> int:
    # Provider accepted the message; confirmation arrives later through its callback.
    return await _apply(
        session,
        recipient_id=recipient_id,
        conversation_message_id=conversation_message_id,
        values={
            "provider_message_id": provider_message_id,
            "status": OUTCOME_PENDING,
            "channel": channel,
            "attempt_count": attempt + 1,
            "last_error": None,
        },
    )


async def record_retry(
    session: AsyncSession,
    *,
    recipient_id: str | None,
    conversation_message_id: str | None,
    attempt: int,
    error: str,
) -> int:
    return await _apply(
        session,
        recipient_id=recipient_id,
        conversation_message_id=conversation_message_id,
        values={"attempt_count": attempt + 1, "last_error": error},
    )


async def record_failed(
    session: AsyncSession,
    *,
    recipient_id: str | None,
    conversation_message_id: str | None,
    attempt: int,
    reason: str,
    failed_at: datetime,
) -> int:
    return await _apply(
        session,
        recipient_id=recipient_id,
        conversation_message_id=conversation_message_id,
        values={
            "status": OUTCOME_FAILED,
            "attempt_count": attempt + 1,
            "last_error": reason,
            "failure_reason": reason,
            "failed_at": failed_at,
        },
    )


async def get_recipient(session: AsyncSession, recipient_id: str) -> MessageRecipient | None:
    return await session.get(MessageRecipient, recipient_id)


async def count_recipients_since(session: AsyncSession, since: datetime) -> dict[str, int]:
    # Group outbound recipients by status for plan usage summaries.
    rows = (
        await session.execute(
            select(MessageRecipient.status, func.count())
            .where(MessageRecipient.created_at >= since)
            .group_by(MessageRecipient.status)
        )
    ).all()
    return {str(status): int(count) for status, count in rows}
