from flockcast.providers.messaging.base import (
    CardLocation,
    MessagingProvider,
    ProviderResult,
    RichCard,
    SenderProfile,
    Suggestion,
    SuggestionAction,
)
from flockcast.providers.messaging.factory import get_messaging_provider
from flockcast.providers.messaging.fake import FakeMessagingProvider
from flockcast.providers.messaging.telnyx import TelnyxMessagingProvider

__all__ = [
    "CardLocation",
    "MessagingProvider",
    "ProviderResult",
    "RichCard",
    "SenderProfile",
    "Suggestion",
    "SuggestionAction",
    "get_messaging_provider",
    "FakeMessagingProvider",
    "TelnyxMessagingProvider",
]
