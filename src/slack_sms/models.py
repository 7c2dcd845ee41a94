from __future__ import annotations

from decimal import Decimal, InvalidOperation

from pydantic import BaseModel, Field, field_serializer


class ChatCredentials(BaseModel):
    user_access_token: str
    bot_access_token: str
    bot_user_id: str


class CarrierCredentials(BaseModel):
    account_id: str
    auth_token: str


class Tenant(BaseModel):
    """
    One installed Slack team: credentials, SMS number and subscriptions.

    `channels` maps a channel id to the set of user ids that receive SMS
    copies of its messages. A channel may stay present with an empty set
    after its last subscriber leaves.
    """

    id: str
    revision: str
    team: str
    chat: ChatCredentials
    carrier: CarrierCredentials | None = None
    phone_number: str | None = None
    channels: dict[str, set[str]] = Field(default_factory=dict)
    last_event_ts: str | None = None
    channel_event_ts: dict[str, str] = Field(default_factory=dict)

    @field_serializer("channels")
    def _serialize_channels(self, channels: dict[str, set[str]]) -> dict[str, list[str]]:
        return {channel: sorted(users) for channel, users in sorted(channels.items())}

    # --- subscription queries ---

    def recipients(self, channel: str) -> set[str]:
        return set(self.channels.get(channel, ()))

    def subscriptions_of(self, user: str) -> set[str]:
        return {channel for channel, users in self.channels.items() if user in users}

    def has_channel(self, channel: str) -> bool:
        return channel in self.channels

    def is_subscribed(self, user: str, channel: str) -> bool:
        return user in self.channels.get(channel, ())

    # --- in-memory mutations (persisted by the caller) ---

    def add_subscriber(self, user: str, channel: str) -> bool:
        subscribers = self.channels.setdefault(channel, set())
        if user in subscribers:
            return False
        subscribers.add(user)
        return True

    def remove_subscriber(self, user: str, channel: str) -> bool:
        subscribers = self.channels.get(channel)
        if not subscribers or user not in subscribers:
            return False
        subscribers.discard(user)
        return True

    # --- event watermark ---

    def watermark(self, channel: str | None = None) -> str | None:
        if channel is None:
            return self.last_event_ts
        return self.channel_event_ts.get(channel)

    def advance_watermark(self, ts: str, channel: str | None = None) -> bool:
        current = self.watermark(channel)
        if current is not None and ts_value(ts) <= ts_value(current):
            return False
        if channel is None:
            self.last_event_ts = ts
        else:
            self.channel_event_ts[channel] = ts
        return True


class UserProfile(BaseModel):
    """The parts of a Slack user the bridge needs."""

    id: str
    name: str = ""
    real_name: str = ""
    phone: str | None = None
    image_192: str | None = None
    is_admin: bool = False

    @property
    def display_name(self) -> str:
        return self.real_name or self.name or self.id


class InstallRequest(BaseModel):
    team_id: str
    access_token: str
    bot_access_token: str
    bot_user_id: str
    user_id: str | None = None


def ts_value(ts: str) -> Decimal:
    """Slack timestamps ("1355517523.000005") compared numerically."""
    try:
        return Decimal(ts)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid event timestamp: {ts!r}") from e
