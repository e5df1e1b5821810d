from __future__ import annotations

from typing import Literal


# Delivery job lifecycle; only the last three are terminal for a single attempt.
DeliveryState = Literal[
    "queued",
    "in_progress",
    "delivered_attempted",
    "retry_scheduled",
    "exhausted",
]

# Outcome status written into the tenant database.
OUTCOME_PENDING = "pending"
OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
TERMINAL_OUTCOMES = (OUTCOME_SENT, OUTCOME_FAILED)

# Tenant handle lifecycle inside the router.
HandleState = Literal["live", "draining", "gone"]

MessageType = Literal["sms", "mms", "rich_card"]
Channel = Literal["sms", "mms", "rcs"]
