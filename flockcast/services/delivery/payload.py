from __future__ import annotations

import re
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flockcast.core.config import get_settings
from flockcast.domain.state import MessageType
from flockcast.providers.messaging.base import RichCard


_E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")
MAX_CONTENT_CHARS = 1600


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryJobPayload(BaseModel):
    # Published schema for API-to-worker handoff; only ``attempt`` changes across retries.
    model_config = ConfigDict(frozen=True)

    job_id: str = Field(default_factory=lambda: uuid4().hex)
    tenant_id: str = Field(min_length=1)
    message_type: MessageType = "sms"
    phone: str
    content: str = Field(default="", max_length=MAX_CONTENT_CHARS)
    media_url: str | None = None
    recipient_id: str | None = None
    conversation_message_id: str | None = None
    rich_card: RichCard | None = None
    attempt: int = Field(default=0, ge=0)
    max_attempts: int = Field(default_factory=lambda: get_settings().delivery_max_attempts, ge=1)
    enqueued_at: datetime = Field(default_factory=_utc_now)

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        normalized = value.strip()
        if not _E164_RE.match(normalized):
            raise ValueError("phone must be in E.164 format")
        return normalized

    @model_validator(mode="after")
    def _check_shape(self) -> "DeliveryJobPayload":
        if self.attempt > self.max_attempts:
            raise ValueError("attempt cannot exceed max_attempts")
        if self.message_type == "mms" and not self.media_url:
            raise ValueError("mms jobs require media_url")
        if self.message_type == "rich_card" and self.rich_card is None:
            raise ValueError("rich_card jobs require rich_card")
        if self.message_type != "rich_card" and not self.content.strip():
            raise ValueError("content is required")
        return self

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempt, 0)

    def next_attempt(self) -> "DeliveryJobPayload":
        return self.model_copy(update={"attempt": self.attempt + 1})

    def arq_job_id(self) -> str:
        # arq refuses a job id it still holds a result for, so each attempt gets its own.
        return f"{self.job_id}:{self.attempt}"
