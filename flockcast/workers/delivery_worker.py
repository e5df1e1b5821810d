from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings
from pydantic import ValidationError

from flockcast.core.config import get_settings
from flockcast.core.logging import configure_logging
from flockcast.services.delivery.payload import DeliveryJobPayload
from flockcast.services.delivery.queue import schedule_delivery_job, set_worker_heartbeat
from flockcast.services.delivery.runtime import DeliveryRuntime


logger = logging.getLogger(__name__)


async def send_message(ctx, payload: dict) -> dict:
    # Registered under the name the queue enqueues (SEND_MESSAGE_JOB).
    # Validate in the worker so malformed jobs fail once instead of looping.
    try:
        job_payload = DeliveryJobPayload.model_validate(payload)
    except ValidationError as exc:
        logger.error("delivery_payload_invalid job_id=%s errors=%s", ctx.get("job_id"), exc.error_count())
        return {"state": "rejected", "error": "invalid payload"}
    processor = ctx["processor"]
    result = await processor.process(job_payload)
    return result.as_dict()


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception as exc:  # noqa: BLE001 - a missed beat must not stop the loop
            logger.warning("worker_heartbeat_failed error=%s", exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    runtime = DeliveryRuntime.build()
    runtime.start_idle_sweeper()
    ctx["runtime"] = runtime
    ctx["processor"] = runtime.processor_for(schedule_delivery_job)
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    logger.info("delivery_worker_started queue=%s", get_settings().delivery_queue_name)


async def _shutdown(ctx) -> None:
    # Stop background loops, then dispose every cached tenant handle.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()
    runtime: DeliveryRuntime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.aclose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.delivery_queue_name
    # Retries are explicit re-enqueues carrying attempt + 1, never arq re-runs.
    max_tries = 1
    max_jobs = settings.worker_max_jobs
    job_timeout = settings.worker_job_timeout_s
    functions = [send_message]
    on_startup = _startup
    on_shutdown = _shutdown
