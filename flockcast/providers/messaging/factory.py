from __future__ import annotations

from flockcast.core.config import get_settings
from flockcast.core.errors import ProviderConfigError
from flockcast.providers.messaging.base import MessagingProvider
from flockcast.providers.messaging.fake import FakeMessagingProvider
from flockcast.providers.messaging.telnyx import TelnyxMessagingProvider


def get_messaging_provider() -> MessagingProvider:
    settings = get_settings()
    provider = (settings.messaging_provider or "").lower()

    if provider == "fake":
        return FakeMessagingProvider()
    if provider == "telnyx":
        if not settings.telnyx_api_key:
            raise ProviderConfigError("TELNYX_API_KEY is required when MESSAGING_PROVIDER=telnyx")
        return TelnyxMessagingProvider()

    raise ProviderConfigError(f"Unsupported messaging provider: {provider}")
