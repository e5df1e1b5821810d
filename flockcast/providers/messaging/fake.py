from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from flockcast.providers.messaging.base import ProviderResult, RichCard, SenderProfile


@dataclass
class FakeSend:
    method: str
    to: str
    body: str
    media_url: str | None = None
    sender: SenderProfile | None = None


@dataclass
class FakeMessagingProvider:
    """Deterministic provider for tests and local runs.

    ``outcomes`` is consumed one entry per send: a string is returned as the
    provider message id, an exception instance is raised. Once exhausted every
    send succeeds with a generated id.
    """

    outcomes: list[Any] = field(default_factory=list)
    rcs_enabled: bool = True
    sends: list[FakeSend] = field(default_factory=list)

    def _next(self, channel: str) -> ProviderResult:
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return ProviderResult(provider_message_id=str(outcome), channel=channel)
        return ProviderResult(provider_message_id=f"fake-{len(self.sends)}", channel=channel)

    async def send_sms(self, to: str, body: str, *, sender: SenderProfile) -> ProviderResult:
        self.sends.append(FakeSend("send_sms", to, body, sender=sender))
        return self._next("sms")

    async def send_mms(self, to: str, body: str, media_url: str, *, sender: SenderProfile) -> ProviderResult:
        self.sends.append(FakeSend("send_mms", to, body, media_url=media_url, sender=sender))
        return self._next("mms")

    async def send_rich_card(self, to: str, card: RichCard, *, sender: SenderProfile) -> ProviderResult:
        if not self.rcs_enabled or not sender.rcs_agent_id:
            if card.media_url:
                result = await self.send_mms(to, card.fallback_text(), card.media_url, sender=sender)
            else:
                result = await self.send_sms(to, card.fallback_text(), sender=sender)
            return ProviderResult(result.provider_message_id, result.channel, fallback_reason="rcs_unavailable")
        self.sends.append(FakeSend("send_rich_card", to, card.title, media_url=card.media_url, sender=sender))
        return self._next("rcs")
