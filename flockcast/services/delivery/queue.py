from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from flockcast.core.config import get_settings
from flockcast.services.delivery.payload import DeliveryJobPayload
from flockcast.services.delivery.processor import DeliveryProcessor, DeliveryResult, RetryScheduler
from flockcast.services.delivery.runtime import DeliveryRuntime, get_inline_runtime


logger = logging.getLogger(__name__)

SEND_MESSAGE_JOB = "send_message"
# Keep heartbeat key stable for ops endpoint lookups.
WORKER_HEARTBEAT_KEY = "flockcast:worker:heartbeat"

_redis_pool: ArqRedis | None = None
_redis_pool_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_inline_mode() -> bool:
    return get_settings().delivery_execution_mode.lower() == "inline"


async def get_redis_pool() -> ArqRedis:
    # Cache the arq pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.delivery_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # None signals Redis unavailability to ops endpoints.
    if is_inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(get_settings().delivery_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if is_inline_mode():
        return
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    ttl_s = max(get_settings().worker_heartbeat_stale_after_s * 2, 60)
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat(), ex=ttl_s)


async def get_worker_heartbeat() -> datetime | None:
    # None when the heartbeat is missing or Redis is unavailable.
    if is_inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def queue_status() -> dict[str, object]:
    heartbeat = await get_worker_heartbeat()
    stale_after = get_settings().worker_heartbeat_stale_after_s
    age_s = (_utc_now() - heartbeat).total_seconds() if heartbeat is not None else None
    return {
        "mode": "inline" if is_inline_mode() else "queue",
        "queue_name": get_settings().delivery_queue_name,
        "depth": await get_queue_depth(),
        "worker_heartbeat_at": heartbeat.isoformat() if heartbeat else None,
        "worker_heartbeat_age_s": round(age_s, 3) if age_s is not None else None,
        "worker_alive": age_s is not None and age_s <= stale_after,
    }


async def schedule_delivery_job(payload: DeliveryJobPayload, delay_s: float = 0.0) -> str:
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        SEND_MESSAGE_JOB,
        payload.model_dump(mode="json"),
        _job_id=payload.arq_job_id(),
        _queue_name=get_settings().delivery_queue_name,
        _defer_by=delay_s if delay_s > 0 else None,
    )
    if job is None:
        # arq returns None for a duplicate job id; the attempt is already queued.
        logger.info("delivery_job_duplicate job_id=%s attempt=%s", payload.job_id, payload.attempt)
    return payload.job_id


async def run_inline_job(
    payload: DeliveryJobPayload,
    processor_factory: Callable[[RetryScheduler], DeliveryProcessor],
) -> DeliveryResult:
    # Inline mode mimics worker retries in-process without Redis.
    pending: list[tuple[DeliveryJobPayload, float]] = [(payload, 0.0)]

    async def _schedule(next_payload: DeliveryJobPayload, delay_s: float) -> None:
        pending.append((next_payload, delay_s))

    processor = processor_factory(_schedule)
    result: DeliveryResult | None = None
    while pending:
        job, delay_s = pending.pop(0)
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        result = await processor.process(job)
    assert result is not None
    return result


async def enqueue_delivery_job(payload: DeliveryJobPayload, *, runtime: DeliveryRuntime | None = None) -> str:
    """Hand a delivery job to the worker queue, or run it to completion in inline mode."""
    if is_inline_mode():
        active = runtime or get_inline_runtime()
        await run_inline_job(payload, active.processor_for)
        return payload.job_id
    return await schedule_delivery_job(payload)
