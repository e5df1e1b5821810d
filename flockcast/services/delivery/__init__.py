from flockcast.services.delivery.gate import OutboundGate
from flockcast.services.delivery.payload import DeliveryJobPayload
from flockcast.services.delivery.processor import DeliveryProcessor, DeliveryResult, RetryScheduler
from flockcast.services.delivery.queue import (
    enqueue_delivery_job,
    get_queue_depth,
    get_worker_heartbeat,
    queue_status,
    run_inline_job,
    schedule_delivery_job,
    set_worker_heartbeat,
)
from flockcast.services.delivery.runtime import DeliveryRuntime

__all__ = [
    "OutboundGate",
    "DeliveryJobPayload",
    "DeliveryProcessor",
    "DeliveryResult",
    "RetryScheduler",
    "DeliveryRuntime",
    "enqueue_delivery_job",
    "get_queue_depth",
    "get_worker_heartbeat",
    "queue_status",
    "run_inline_job",
    "schedule_delivery_job",
    "set_worker_heartbeat",
]
