from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from flockcast.core.config import get_settings
from flockcast.core.errors import ProviderConfigError, ProviderError, ProviderRejected
from flockcast.domain.state import Channel
from flockcast.providers.messaging.base import ProviderResult, RichCard, SenderProfile, Suggestion
from flockcast.services.resilience import CircuitBreaker, get_resilience_redis, retry_async
from flockcast.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

INTEGRATION = "messaging.telnyx"
# Throttling and upstream outages are worth another attempt; other 4xx are not.
_RETRYABLE_STATUS = {408, 429}


def _suggestion_payload(suggestion: Suggestion) -> dict[str, Any]:
    postback = suggestion.postback_data or suggestion.text
    action = suggestion.action
    if suggestion.type == "reply" or action is None:
        return {"reply": {"text": suggestion.text, "postbackData": postback}}
    body: dict[str, Any] = {"text": suggestion.text, "postbackData": postback}
    if action.type == "open_url":
        body["openUrlAction"] = {"url": action.url}
    elif action.type == "dial_phone":
        body["dialAction"] = {"phoneNumber": action.phone_number}
    elif action.location is not None:
        body["viewLocationAction"] = {
            "latLong": {"latitude": action.location.latitude, "longitude": action.location.longitude},
            "label": action.location.label,
        }
    return {"action": body}


def _rich_card_content(card: RichCard) -> dict[str, Any]:
    content: dict[str, Any] = {"title": card.title, "description": card.description or ""}
    if card.media_url:
        content["media"] = {
            "height": card.media_height,
            "contentInfo": {"fileUrl": card.media_url, "forceRefresh": False},
        }
    actions = card.card_actions()
    if actions:
        content["suggestions"] = [_suggestion_payload(item) for item in actions]
    message: dict[str, Any] = {"richCard": {"standaloneCard": {"cardContent": content}}}
    chips = card.reply_chips()
    if chips:
        message["suggestions"] = [_suggestion_payload(item) for item in chips]
    return message


def _error_detail(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        errors = []
    if errors and isinstance(errors[0], dict):
        first = errors[0]
        return str(first.get("detail") or first.get("title") or first.get("code"))
    return f"HTTP {response.status_code}"


class TelnyxMessagingProvider:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._settings = get_settings()
        self._client = client
        self._breaker = breaker

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.provider_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(base_url=self._settings.telnyx_base_url, timeout=timeout_s)
        return self._client

    async def _get_breaker(self) -> CircuitBreaker:
        # Breaker state is shared across worker processes through Redis when available.
        if self._breaker is None:
            self._breaker = CircuitBreaker(INTEGRATION, redis=await get_resilience_redis())
        return self._breaker

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def _base_payload(self, to: str, sender: SenderProfile) -> dict[str, Any]:
        payload: dict[str, Any] = {"to": to}
        if sender.phone_number:
            payload["from"] = sender.phone_number
        if self._settings.telnyx_messaging_profile_id:
            payload["messaging_profile_id"] = self._settings.telnyx_messaging_profile_id
        if "from" not in payload and "messaging_profile_id" not in payload:
            raise ProviderConfigError("Tenant has no sender number and TELNYX_MESSAGING_PROFILE_ID is unset")
        if self._settings.telnyx_webhook_url:
            payload["webhook_url"] = self._settings.telnyx_webhook_url
        return payload

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        api_key = self._settings.telnyx_api_key
        if not api_key:
            raise ProviderConfigError("TELNYX_API_KEY is required for the Telnyx provider")
        headers = {"Authorization": f"Bearer {api_key}"}
        client = self._get_client()
        breaker = await self._get_breaker()
        start = time.monotonic()
        await breaker.before_call()

        async def _call() -> httpx.Response:
            return await client.request(method, path, json=payload, headers=headers)

        def _retryable(exc: Exception) -> bool:
            return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, TimeoutError))

        try:
            response = await retry_async(_call, retryable=_retryable)
        except (httpx.HTTPError, TimeoutError) as exc:
            await breaker.record_failure()
            record_external_call(
                integration=INTEGRATION,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ProviderError(f"Telnyx request failed: {type(exc).__name__}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 500:
            await breaker.record_failure()
        else:
            await breaker.record_success()
        record_external_call(integration=INTEGRATION, latency_ms=latency_ms, success=response.status_code < 400)
        return response

    async def _submit(self, payload: dict[str, Any], *, channel: Channel) -> ProviderResult:
        response = await self._request("POST", "/messages", payload)
        if response.status_code in {401, 403}:
            raise ProviderConfigError(f"Telnyx auth error {response.status_code}: check TELNYX_API_KEY")
        if response.status_code >= 400:
            permanent = response.status_code < 500 and response.status_code not in _RETRYABLE_STATUS
            raise ProviderRejected(
                _error_detail(response),
                permanent=permanent,
                status_code=response.status_code,
            )
        message_id = (response.json().get("data") or {}).get("id")
        if not message_id:
            raise ProviderError("Telnyx response did not include a message id")
        return ProviderResult(provider_message_id=str(message_id), channel=channel)

    async def send_sms(self, to: str, body: str, *, sender: SenderProfile) -> ProviderResult:
        payload = {**self._base_payload(to, sender), "text": body}
        return await self._submit(payload, channel="sms")

    async def send_mms(self, to: str, body: str, media_url: str, *, sender: SenderProfile) -> ProviderResult:
        payload = {**self._base_payload(to, sender), "text": body, "media_urls": [media_url]}
        return await self._submit(payload, channel="mms")

    async def rcs_capable(self, to: str, agent_id: str) -> bool:
        try:
            response = await self._request("GET", f"/rcs/capabilities/{agent_id}/{to}")
        except ProviderError as exc:
            logger.info("rcs_capability_check_failed error=%s", exc)
            return False
        if response.status_code >= 400:
            return False
        data = response.json().get("data") or {}
        return bool(data.get("rcs_enabled"))

    async def _fallback(self, to: str, card: RichCard, *, sender: SenderProfile, reason: str) -> ProviderResult:
        logger.info("rcs_fallback reason=%s", reason)
        if card.media_url:
            result = await self.send_mms(to, card.fallback_text(), card.media_url, sender=sender)
        else:
            result = await self.send_sms(to, card.fallback_text(), sender=sender)
        return ProviderResult(result.provider_message_id, result.channel, fallback_reason=reason)

    async def send_rich_card(self, to: str, card: RichCard, *, sender: SenderProfile) -> ProviderResult:
        agent_id = sender.rcs_agent_id
        if not agent_id:
            return await self._fallback(to, card, sender=sender, reason="no_rcs_agent")
        if not await self.rcs_capable(to, agent_id):
            return await self._fallback(to, card, sender=sender, reason="recipient_not_rcs_capable")
        payload: dict[str, Any] = {
            "to": to,
            "from": agent_id,
            "type": "RCS",
            "contentMessage": _rich_card_content(card),
        }
        if self._settings.telnyx_webhook_url:
            payload["webhook_url"] = self._settings.telnyx_webhook_url
        try:
            return await self._submit(payload, channel="rcs")
        except ProviderRejected as exc:
            return await self._fallback(to, card, sender=sender, reason=f"rcs_rejected: {exc.reason}")
