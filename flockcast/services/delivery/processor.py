"""Single-attempt delivery state machine.

One call to :meth:`DeliveryProcessor.process` moves a job from ``in_progress`` to
exactly one of ``delivered_attempted``, ``retry_scheduled`` or ``exhausted`` and
persists the matching outcome in the tenant database. Retries are new jobs carrying
``attempt + 1``; the processor never loops on its own.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from flockcast.core.config import get_settings
from flockcast.core.errors import (
    FlockcastError,
    HandleAcquisitionError,
    PermanentDeliveryFailure,
    ProviderRejected,
    RouterClosedError,
    TenantNotFoundError,
    TenantSuspendedError,
)
from flockcast.domain.records import OutboundStatus
from flockcast.domain.state import DeliveryState
from flockcast.persistence.db import SessionLocal
from flockcast.persistence.repos import dead_letters as dead_letters_repo
from flockcast.persistence.repos import outcomes as outcomes_repo
from flockcast.providers.messaging.base import MessagingProvider, ProviderResult, SenderProfile
from flockcast.services.delivery.gate import OutboundGate
from flockcast.services.delivery.payload import DeliveryJobPayload
from flockcast.services.resilience import RetryPolicy, backoff_delay_s, retry_async
from flockcast.services.telemetry import increment_counter
from flockcast.services.tenancy import TenantRouter


logger = logging.getLogger(__name__)

DEAD_LETTER_CATEGORY = "sms_send"

RetryScheduler = Callable[[DeliveryJobPayload, float], Awaitable[None]]


@dataclass(frozen=True)
class DeliveryResult:
    job_id: str
    tenant_id: str
    state: DeliveryState
    attempt: int
    provider_message_id: str | None = None
    channel: str | None = None
    error: str | None = None
    retry_in_s: float | None = None
    dead_lettered: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _outcome_write_retryable(exc: Exception) -> bool:
    # Budget pressure and unreachable databases pass; a gone tenant or closing router will not.
    if isinstance(exc, (TenantNotFoundError, TenantSuspendedError, RouterClosedError)):
        return False
    return isinstance(exc, HandleAcquisitionError)


def _failure_reason(exc: Exception) -> str:
    # Short operator-facing reasons; stack traces stay in the logs.
    if isinstance(exc, (ProviderRejected, PermanentDeliveryFailure)):
        return exc.reason
    if isinstance(exc, FlockcastError):
        return str(exc)
    if isinstance(exc, TimeoutError):
        return "Provider call timed out"
    return f"Unexpected delivery error: {type(exc).__name__}"


class DeliveryProcessor:
    def __init__(
        self,
        router: TenantRouter,
        provider: MessagingProvider,
        *,
        scheduler: RetryScheduler,
        gate: OutboundGate | None = None,
        registry_session_factory: async_sessionmaker[AsyncSession] | None = None,
        backoff_base_ms: int | None = None,
        backoff_max_ms: int | None = None,
        outcome_retry: RetryPolicy | None = None,
    ) -> None:
        settings = get_settings()
        self._router = router
        self._provider = provider
        self._scheduler = scheduler
        self._gate = gate or OutboundGate(router.directory)
        self._registry_sessions = registry_session_factory or SessionLocal
        self._backoff_base_ms = settings.delivery_backoff_base_ms if backoff_base_ms is None else backoff_base_ms
        self._backoff_max_ms = settings.delivery_backoff_max_ms if backoff_max_ms is None else backoff_max_ms
        self._outcome_retry = outcome_retry or RetryPolicy(
            timeout_ms=settings.delivery_outcome_write_timeout_ms,
            max_attempts=settings.delivery_outcome_write_attempts,
            backoff_ms=settings.delivery_outcome_write_backoff_ms,
        )

    async def process(self, payload: DeliveryJobPayload) -> DeliveryResult:
        logger.info(
            "delivery_in_progress job_id=%s tenant_id=%s attempt=%s/%s",
            payload.job_id,
            payload.tenant_id,
            payload.attempt + 1,
            payload.max_attempts,
        )
        try:
            if payload.attempts_left == 0:
                raise PermanentDeliveryFailure("Maximum delivery attempts reached", attempts=payload.attempt)
            status = await self._gate.check(payload.tenant_id, attempt=payload.attempt)
            result = await self._send(payload, status)
        except PermanentDeliveryFailure as exc:
            return await self._exhaust(payload, exc.reason)
        except Exception as exc:  # noqa: BLE001 - every failure ends as a persisted outcome
            return await self._handle_failure(payload, exc)
        return await self._accept(payload, result)

    async def _send(self, payload: DeliveryJobPayload, status: OutboundStatus) -> ProviderResult:
        sender = SenderProfile(phone_number=status.sender_phone_number, rcs_agent_id=status.rcs_agent_id)
        if payload.message_type == "rich_card" and payload.rich_card is not None:
            return await self._provider.send_rich_card(payload.phone, payload.rich_card, sender=sender)
        if payload.message_type == "mms" and payload.media_url:
            return await self._provider.send_mms(payload.phone, payload.content, payload.media_url, sender=sender)
        return await self._provider.send_sms(payload.phone, payload.content, sender=sender)

    async def _write_outcome(
        self,
        payload: DeliveryJobPayload,
        write: Callable[[AsyncSession], Awaitable[int]],
    ) -> None:
        if not payload.recipient_id and not payload.conversation_message_id:
            return

        async def _attempt() -> None:
            async with self._router.lease(payload.tenant_id) as handle:
                async with handle.session() as session:
                    await write(session)
                    await session.commit()

        await retry_async(
            _attempt,
            policy=self._outcome_retry,
            retryable=_outcome_write_retryable,
            label="outcome_write",
        )

    async def _accept(self, payload: DeliveryJobPayload, result: ProviderResult) -> DeliveryResult:
        increment_counter(f"delivery_accepted_total.{result.channel}")
        outcome = DeliveryResult(
            job_id=payload.job_id,
            tenant_id=payload.tenant_id,
            state="delivered_attempted",
            attempt=payload.attempt,
            provider_message_id=result.provider_message_id,
            channel=result.channel,
        )
        try:
            await self._write_outcome(
                payload,
                lambda session: outcomes_repo.record_accepted(
                    session,
                    recipient_id=payload.recipient_id,
                    conversation_message_id=payload.conversation_message_id,
                    provider_message_id=result.provider_message_id,
                    channel=result.channel,
                    attempt=payload.attempt,
                ),
            )
        except Exception as exc:  # noqa: BLE001 - the provider already accepted; never resend
            logger.error(
                "delivery_outcome_write_failed job_id=%s tenant_id=%s provider_message_id=%s error=%s",
                payload.job_id,
                payload.tenant_id,
                result.provider_message_id,
                exc,
            )
            dead_lettered = await self._dead_letter(
                payload,
                f"Accepted as {result.provider_message_id} but outcome write failed: {_failure_reason(exc)}",
                extra={"provider_message_id": result.provider_message_id, "channel": result.channel},
            )
            return replace(outcome, dead_lettered=dead_lettered)
        logger.info(
            "delivery_accepted job_id=%s tenant_id=%s provider_message_id=%s channel=%s",
            payload.job_id,
            payload.tenant_id,
            result.provider_message_id,
            result.channel,
        )
        return outcome

    async def _handle_failure(self, payload: DeliveryJobPayload, exc: Exception) -> DeliveryResult:
        reason = _failure_reason(exc)
        permanent = isinstance(exc, ProviderRejected) and exc.permanent
        logger.warning(
            "delivery_attempt_failed job_id=%s tenant_id=%s attempt=%s permanent=%s error=%s",
            payload.job_id,
            payload.tenant_id,
            payload.attempt + 1,
            permanent,
            reason,
        )
        if permanent or payload.attempt + 1 >= payload.max_attempts:
            return await self._exhaust(payload, reason)

        try:
            await self._write_outcome(
                payload,
                lambda session: outcomes_repo.record_retry(
                    session,
                    recipient_id=payload.recipient_id,
                    conversation_message_id=payload.conversation_message_id,
                    attempt=payload.attempt,
                    error=reason,
                ),
            )
        except Exception as write_exc:  # noqa: BLE001 - retry bookkeeping must not drop the retry
            logger.warning("delivery_retry_write_failed job_id=%s error=%s", payload.job_id, write_exc)

        delay_s = backoff_delay_s(payload.attempt, base_ms=self._backoff_base_ms, max_ms=self._backoff_max_ms)
        try:
            await self._scheduler(payload.next_attempt(), delay_s)
        except Exception as schedule_exc:  # noqa: BLE001 - an unschedulable retry is a terminal failure
            logger.error("delivery_retry_schedule_failed job_id=%s error=%s", payload.job_id, schedule_exc)
            return await self._exhaust(payload, f"{reason}; retry could not be scheduled")
        increment_counter("delivery_retries_total")
        return DeliveryResult(
            job_id=payload.job_id,
            tenant_id=payload.tenant_id,
            state="retry_scheduled",
            attempt=payload.attempt,
            error=reason,
            retry_in_s=delay_s,
        )

    async def _exhaust(self, payload: DeliveryJobPayload, reason: str) -> DeliveryResult:
        increment_counter("delivery_exhausted_total")
        dead_lettered = False
        try:
            await self._write_outcome(
                payload,
                lambda session: outcomes_repo.record_failed(
                    session,
                    recipient_id=payload.recipient_id,
                    conversation_message_id=payload.conversation_message_id,
                    attempt=payload.attempt,
                    reason=reason,
                    failed_at=_utc_now(),
                ),
            )
        except HandleAcquisitionError as exc:
            logger.warning("delivery_outcome_unreachable job_id=%s error=%s", payload.job_id, exc)
            dead_lettered = await self._dead_letter(payload, reason)
        except Exception as exc:  # noqa: BLE001 - keep the failure queryable somewhere
            logger.error("delivery_outcome_write_failed job_id=%s error=%s", payload.job_id, exc)
            dead_lettered = await self._dead_letter(payload, reason)
        logger.warning(
            "delivery_exhausted job_id=%s tenant_id=%s attempts=%s reason=%s",
            payload.job_id,
            payload.tenant_id,
            payload.attempt + 1,
            reason,
        )
        return DeliveryResult(
            job_id=payload.job_id,
            tenant_id=payload.tenant_id,
            state="exhausted",
            attempt=payload.attempt,
            error=reason,
            dead_lettered=dead_lettered,
        )

    async def _dead_letter(
        self,
        payload: DeliveryJobPayload,
        reason: str,
        *,
        extra: dict[str, Any] | None = None,
    ) -> bool:
        try:
            async with self._registry_sessions() as session:
                await dead_letters_repo.add_dead_letter(
                    session,
                    category=DEAD_LETTER_CATEGORY,
                    payload=payload.model_dump(mode="json"),
                    error_message=reason,
                    tenant_id=payload.tenant_id,
                    external_id=payload.job_id,
                    metadata={"attempt": payload.attempt, **(extra or {})},
                )
                await session.commit()
        except Exception:  # noqa: BLE001 - last resort is the log line
            logger.exception("dead_letter_write_failed job_id=%s", payload.job_id)
            return False
        increment_counter("delivery_dead_lettered_total")
        return True
