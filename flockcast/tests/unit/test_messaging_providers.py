from __future__ import annotations

import json

import httpx
import pytest

from flockcast.core.config import get_settings
from flockcast.core.errors import IntegrationUnavailableError, ProviderConfigError, ProviderError, ProviderRejected
from flockcast.providers.messaging import (
    CardLocation,
    FakeMessagingProvider,
    RichCard,
    SenderProfile,
    Suggestion,
    SuggestionAction,
    TelnyxMessagingProvider,
    get_messaging_provider,
)
from flockcast.services.resilience import CircuitBreaker, CircuitBreakerConfig
from flockcast.services.telemetry import external_latency_by_integration


SENDER = SenderProfile(phone_number="+15550000001", rcs_agent_id="agent-1")


@pytest.fixture
def telnyx_env(monkeypatch):
    monkeypatch.setenv("TELNYX_API_KEY", "KEY123")
    monkeypatch.setenv("TELNYX_WEBHOOK_URL", "https://api.example.org/webhooks/telnyx")
    monkeypatch.setenv("PROVIDER_RETRY_MAX_ATTEMPTS", "1")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _provider(handler, *, threshold: int = 5) -> TelnyxMessagingProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://telnyx.test/v2")
    breaker = CircuitBreaker(
        "messaging.telnyx.test",
        redis=None,
        config=CircuitBreakerConfig(failure_threshold=threshold, open_seconds=30, half_open_trials=1),
    )
    return TelnyxMessagingProvider(client, breaker=breaker)


@pytest.mark.asyncio
async def test_fake_provider_consumes_scripted_outcomes() -> None:
    provider = FakeMessagingProvider(outcomes=[ProviderError("boom"), "PMSG-1"])
    with pytest.raises(ProviderError):
        await provider.send_sms("+15551234567", "hi", sender=SENDER)
    first = await provider.send_sms("+15551234567", "hi", sender=SENDER)
    generated = await provider.send_mms("+15551234567", "pic", "https://example.org/p.png", sender=SENDER)

    assert first.provider_message_id == "PMSG-1"
    assert generated.channel == "mms"
    assert generated.provider_message_id.startswith("fake-")
    assert [send.method for send in provider.sends] == ["send_sms", "send_sms", "send_mms"]


def test_factory_selects_configured_provider(monkeypatch) -> None:
    monkeypatch.setenv("MESSAGING_PROVIDER", "fake")
    get_settings.cache_clear()
    assert isinstance(get_messaging_provider(), FakeMessagingProvider)

    monkeypatch.setenv("MESSAGING_PROVIDER", "telnyx")
    monkeypatch.delenv("TELNYX_API_KEY", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_messaging_provider()

    monkeypatch.setenv("MESSAGING_PROVIDER", "pigeon")
    get_settings.cache_clear()
    with pytest.raises(ProviderConfigError):
        get_messaging_provider()


@pytest.mark.asyncio
async def test_telnyx_send_sms_posts_expected_payload(telnyx_env) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"id": "msg-42"}})

    result = await _provider(handler).send_sms("+15551234567", "Hello", sender=SENDER)

    assert result.provider_message_id == "msg-42"
    assert result.channel == "sms"
    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/v2/messages"
    assert seen[0].headers["Authorization"] == "Bearer KEY123"
    assert body == {
        "to": "+15551234567",
        "from": "+15550000001",
        "webhook_url": "https://api.example.org/webhooks/telnyx",
        "text": "Hello",
    }
    assert external_latency_by_integration(window_s=60)["messaging.telnyx"]["error_rate"] == 0.0


@pytest.mark.asyncio
async def test_telnyx_maps_status_codes_to_errors(telnyx_env) -> None:
    responses = iter(
        [
            httpx.Response(422, json={"errors": [{"detail": "Invalid 'to' number"}]}),
            httpx.Response(429, json={"errors": [{"title": "Too many requests"}]}),
            httpx.Response(503, text="unavailable"),
            httpx.Response(401, json={}),
        ]
    )
    provider = _provider(lambda request: next(responses))

    with pytest.raises(ProviderRejected) as invalid:
        await provider.send_sms("+15551234567", "hi", sender=SENDER)
    assert invalid.value.permanent is True
    assert invalid.value.reason == "Invalid 'to' number"

    with pytest.raises(ProviderRejected) as throttled:
        await provider.send_sms("+15551234567", "hi", sender=SENDER)
    assert throttled.value.permanent is False

    with pytest.raises(ProviderRejected) as outage:
        await provider.send_sms("+15551234567", "hi", sender=SENDER)
    assert outage.value.permanent is False
    assert outage.value.reason == "HTTP 503"

    with pytest.raises(ProviderConfigError):
        await provider.send_sms("+15551234567", "hi", sender=SENDER)


@pytest.mark.asyncio
async def test_telnyx_requires_a_sender(telnyx_env) -> None:
    provider = _provider(lambda request: httpx.Response(200, json={"data": {"id": "x"}}))
    with pytest.raises(ProviderConfigError):
        await provider.send_sms("+15551234567", "hi", sender=SenderProfile())


@pytest.mark.asyncio
async def test_telnyx_network_errors_open_the_breaker(telnyx_env) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    provider = _provider(handler, threshold=2)
    for _ in range(2):
        with pytest.raises(ProviderError):
            await provider.send_sms("+15551234567", "hi", sender=SENDER)
    with pytest.raises(IntegrationUnavailableError):
        await provider.send_sms("+15551234567", "hi", sender=SENDER)


@pytest.mark.asyncio
async def test_telnyx_rich_card_when_recipient_is_capable(telnyx_env) -> None:
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            assert request.url.path == "/v2/rcs/capabilities/agent-1/+15551234567"
            return httpx.Response(200, json={"data": {"rcs_enabled": True}})
        posted.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"id": "rcs-1"}})

    card = RichCard(
        title="Easter Service",
        description="Sunday 9am",
        media_url="https://example.org/easter.png",
        suggestions=[
            Suggestion(text="Going", postback_data="rsvp_yes"),
            Suggestion(type="action", text="Website", action=SuggestionAction(type="open_url", url="https://example.org")),
        ],
        location=CardLocation(latitude=40.7, longitude=-74.0, label="Main Campus"),
        quick_replies=["I'll be there!", "Maybe"],
    )
    result = await _provider(handler).send_rich_card("+15551234567", card, sender=SENDER)

    assert result.channel == "rcs"
    assert result.fallback_reason is None
    message = posted[0]["contentMessage"]
    content = message["richCard"]["standaloneCard"]["cardContent"]
    assert posted[0]["from"] == "agent-1"
    assert content["media"]["contentInfo"]["fileUrl"] == "https://example.org/easter.png"
    assert content["suggestions"][0] == {"reply": {"text": "Going", "postbackData": "rsvp_yes"}}
    assert content["suggestions"][1]["action"]["openUrlAction"] == {"url": "https://example.org"}
    assert content["suggestions"][2]["action"]["viewLocationAction"] == {
        "latLong": {"latitude": 40.7, "longitude": -74.0},
        "label": "Main Campus",
    }
    assert [chip["reply"]["text"] for chip in message["suggestions"]] == ["I'll be there!", "Maybe"]


@pytest.mark.asyncio
async def test_telnyx_rich_card_falls_back_to_sms(telnyx_env) -> None:
    posted: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"data": {"rcs_enabled": False}})
        posted.append(json.loads(request.content))
        return httpx.Response(200, json={"data": {"id": "sms-1"}})

    card = RichCard(title="Choir practice", description="Thursday 6pm")
    result = await _provider(handler).send_rich_card("+15551234567", card, sender=SENDER)

    assert result.channel == "sms"
    assert result.fallback_reason == "recipient_not_rcs_capable"
    assert posted[0]["text"] == "Choir practice\n\nThursday 6pm"
