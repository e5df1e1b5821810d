from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from flockcast.domain.state import Channel


class CardLocation(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    label: str | None = None


class SuggestionAction(BaseModel):
    type: Literal["open_url", "dial_phone", "show_location"]
    url: str | None = None
    phone_number: str | None = None
    location: CardLocation | None = None


class Suggestion(BaseModel):
    type: Literal["reply", "action"] = "reply"
    text: str = Field(min_length=1, max_length=25)
    postback_data: str | None = None
    action: SuggestionAction | None = None


class RichCard(BaseModel):
    """Announcement card sent over RCS, degraded to SMS/MMS when RCS is unavailable.

    The shortcut fields (``rsvp_url``, ``website_url``, ``phone_number``, ``location``)
    become card action buttons; ``quick_replies`` are chips shown below the card.
    """

    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    media_url: str | None = None
    media_height: Literal["SHORT", "MEDIUM", "TALL"] = "TALL"
    rsvp_url: str | None = None
    website_url: str | None = None
    phone_number: str | None = None
    location: CardLocation | None = None
    suggestions: list[Suggestion] = Field(default_factory=list, max_length=4)
    quick_replies: list[str] = Field(default_factory=list, max_length=5)

    def card_actions(self) -> list[Suggestion]:
        actions = list(self.suggestions)
        if self.rsvp_url:
            actions.append(
                Suggestion(type="action", text="RSVP", action=SuggestionAction(type="open_url", url=self.rsvp_url))
            )
        if self.location:
            actions.append(
                Suggestion(
                    type="action",
                    text="Get Directions",
                    action=SuggestionAction(type="show_location", location=self.location),
                )
            )
        if self.phone_number:
            actions.append(
                Suggestion(
                    type="action",
                    text="Call",
                    action=SuggestionAction(type="dial_phone", phone_number=self.phone_number),
                )
            )
        if self.website_url:
            actions.append(
                Suggestion(
                    type="action",
                    text="Website",
                    action=SuggestionAction(type="open_url", url=self.website_url),
                )
            )
        # RCS cards hold at most four buttons.
        return actions[:4]

    def reply_chips(self) -> list[Suggestion]:
        return [Suggestion(text=text[:25], postback_data=text) for text in self.quick_replies if text.strip()]

    def fallback_text(self) -> str:
        # Plain-text rendering for recipients without RCS.
        parts = [self.title]
        if self.description:
            parts.append(self.description)
        return "\n\n".join(parts)


@dataclass(frozen=True)
class SenderProfile:
    phone_number: str | None = None
    rcs_agent_id: str | None = None


@dataclass(frozen=True)
class ProviderResult:
    provider_message_id: str
    channel: Channel
    # Set when a rich card was downgraded to SMS/MMS.
    fallback_reason: str | None = None


class MessagingProvider(Protocol):
    async def send_sms(self, to: str, body: str, *, sender: SenderProfile) -> ProviderResult:
        ...

    async def send_mms(self, to: str, body: str, media_url: str, *, sender: SenderProfile) -> ProviderResult:
        ...

    async def send_rich_card(self, to: str, card: RichCard, *, sender: SenderProfile) -> ProviderResult:
        ...
