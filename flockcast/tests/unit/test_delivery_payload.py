from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from flockcast.domain.records import OutboundStatus
from flockcast.providers.messaging import RichCard
from flockcast.services.delivery.payload import DeliveryJobPayload


def test_defaults_and_phone_normalization() -> None:
    payload = DeliveryJobPayload(tenant_id="t1", phone=" +15551234567 ", content="Service at 10am")
    assert payload.phone == "+15551234567"
    assert payload.attempt == 0
    assert payload.max_attempts == 3
    assert payload.attempts_left == 3
    assert payload.job_id


@pytest.mark.parametrize("phone", ["5551234567", "+0123456789", "+1555-123-4567", ""])
def test_rejects_non_e164_numbers(phone: str) -> None:
    with pytest.raises(ValidationError):
        DeliveryJobPayload(tenant_id="t1", phone=phone, content="hi")


def test_shape_rules_per_message_type() -> None:
    with pytest.raises(ValidationError):
        DeliveryJobPayload(tenant_id="t1", phone="+15551234567", content="   ")
    with pytest.raises(ValidationError):
        DeliveryJobPayload(tenant_id="t1", phone="+15551234567", content="pic", message_type="mms")
    with pytest.raises(ValidationError):
        DeliveryJobPayload(tenant_id="t1", phone="+15551234567", message_type="rich_card")
    with pytest.raises(ValidationError):
        DeliveryJobPayload(tenant_id="t1", phone="+15551234567", content="x" * 1601)

    card = DeliveryJobPayload(
        tenant_id="t1",
        phone="+15551234567",
        message_type="rich_card",
        rich_card=RichCard(title="Easter Service"),
    )
    assert card.content == ""


def test_attempt_cannot_exceed_max_attempts() -> None:
    with pytest.raises(ValidationError):
        DeliveryJobPayload(tenant_id="t1", phone="+15551234567", content="hi", attempt=4, max_attempts=3)


def test_next_attempt_changes_only_the_attempt() -> None:
    payload = DeliveryJobPayload(tenant_id="t1", phone="+15551234567", content="hi", recipient_id="r1")
    retry = payload.next_attempt()

    assert retry.attempt == 1
    assert retry.model_dump(exclude={"attempt"}) == payload.model_dump(exclude={"attempt"})
    assert payload.arq_job_id() != retry.arq_job_id()
    assert retry.arq_job_id() == f"{payload.job_id}:1"


def test_payload_survives_json_handoff() -> None:
    payload = DeliveryJobPayload(
        tenant_id="t1",
        phone="+15551234567",
        message_type="rich_card",
        rich_card=RichCard(title="Potluck", description="Sunday after service"),
    )
    restored = DeliveryJobPayload.model_validate(payload.model_dump(mode="json"))
    assert restored == payload


def test_outbound_status_blocks_inactive_and_expired_tenants() -> None:
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    base = {"tenant_id": "t1", "status": "active", "subscription_status": "active"}

    assert OutboundStatus(**base).blocked_reason(now=now) is None
    assert OutboundStatus(**{**base, "status": "suspended"}).blocked_reason(now=now) == "Tenant is suspended"
    assert OutboundStatus(**{**base, "subscription_status": "unpaid"}).blocked_reason(now=now)
    expired = OutboundStatus(**{**base, "subscription_status": "trial", "trial_ends_at": now - timedelta(days=1)})
    running = OutboundStatus(**{**base, "subscription_status": "trial", "trial_ends_at": now + timedelta(days=1)})
    assert expired.blocked_reason(now=now) == "Trial has expired"
    assert running.blocked_reason(now=now) is None
