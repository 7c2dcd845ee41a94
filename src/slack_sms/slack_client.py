from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import Any, Protocol

import httpx

from .config import Settings, get_settings
from .errors import ConfigurationError, UpstreamFailure
from .models import Tenant, UserProfile
from .phone import phone_matches

logger = logging.getLogger(__name__)


class ChatDirectory(Protocol):
    """What the routers need from the chat platform."""

    def channel_name(self, channel: str) -> str: ...

    def user(self, user: str) -> UserProfile: ...

    def phone_of(self, user: str) -> str | None: ...

    def user_by_phone(self, phone: str) -> UserProfile | None: ...

    def post_message(
        self,
        channel: str,
        text: str,
        *,
        username: str | None = None,
        icon_url: str | None = None,
    ) -> None: ...

    def send_direct_message(self, user: str, text: str) -> None: ...

    def is_member(self, user: str, channel: str) -> bool: ...

    def invite(self, user: str, channel: str) -> None: ...

    def elevated(self) -> AbstractContextManager[ChatDirectory]: ...


DirectoryFactory = Callable[[Tenant], ChatDirectory]


class SlackApiError(UpstreamFailure):
    """Slack answered with ok=false."""

    def __init__(self, method: str, error: str) -> None:
        super().__init__(f"Slack {method} returned {error}", method=method)
        self.method = method
        self.error = error


_http_client: httpx.Client | None = None


def get_http_client() -> httpx.Client:
    """Lazily create the connection pool shared by every Slack call."""
    global _http_client
    if _http_client is None:
        _http_client = httpx.Client()
    return _http_client


class SlackDirectory:
    """
    ChatDirectory backed by the Slack Web API.

    Calls are made with the bot token. `elevated()` switches to the
    installing user's token for the duration of a `with` block and always
    switches back, even when the call inside fails.
    """

    def __init__(
        self,
        bot_token: str,
        user_token: str | None = None,
        *,
        api_url: str = "https://slack.com/api",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.token = bot_token
        self._user_token = user_token
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._client = client or get_http_client()
        self._users: dict[str, UserProfile] = {}

    def call(self, method: str, **params: Any) -> dict[str, Any]:
        data = {k: v for k, v in params.items() if v is not None}
        try:
            response = self._client.post(
                f"{self._api_url}/{method}",
                data=data,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Slack {method} failed: {e}", method=method) from e
        except ValueError as e:
            raise UpstreamFailure(f"Slack {method} returned invalid JSON", method=method) from e

        if not payload.get("ok"):
            raise SlackApiError(method, str(payload.get("error", "unknown_error")))
        return payload

    def _paginate(self, method: str, key: str, **params: Any) -> Iterator[Any]:
        cursor: str | None = None
        while True:
            payload = self.call(method, cursor=cursor, limit=200, **params)
            yield from payload.get(key, [])
            cursor = (payload.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                return

    # --- lookups ---

    def channel_name(self, channel: str) -> str:
        logger.debug("Looking up name for %s", channel)
        payload = self.call("conversations.info", channel=channel)
        return str(payload["channel"]["name"])

    def user(self, user: str) -> UserProfile:
        if user not in self._users:
            logger.debug("Looking up user %s", user)
            payload = self.call("users.info", user=user)
            self._users[user] = profile_from_member(payload["user"])
        return self._users[user]

    def phone_of(self, user: str) -> str | None:
        return self.user(user).phone or None

    def user_by_phone(self, phone: str) -> UserProfile | None:
        for member in self._paginate("users.list", "members"):
            profile = profile_from_member(member)
            if phone_matches(phone, profile.phone):
                self._users[profile.id] = profile
                return profile
        return None

    def is_member(self, user: str, channel: str) -> bool:
        members = self._paginate("conversations.members", "members", channel=channel)
        try:
            return any(member == user for member in members)
        except SlackApiError as e:
            # private channels are invisible to a bot that is not in them
            if e.error in ("channel_not_found", "not_in_channel"):
                return False
            raise

    # --- actions ---

    def post_message(
        self,
        channel: str,
        text: str,
        *,
        username: str | None = None,
        icon_url: str | None = None,
    ) -> None:
        self.call(
            "chat.postMessage",
            channel=channel,
            text=text,
            username=username,
            icon_url=icon_url,
        )

    def send_direct_message(self, user: str, text: str) -> None:
        payload = self.call("conversations.open", users=user)
        self.post_message(payload["channel"]["id"], text)

    def invite(self, user: str, channel: str) -> None:
        try:
            self.call("conversations.invite", channel=channel, users=user)
        except SlackApiError as e:
            if e.error != "already_in_channel":
                raise

    @contextmanager
    def elevated(self) -> Iterator[SlackDirectory]:
        if not self._user_token:
            raise ConfigurationError("No user token available for an elevated Slack call")
        base = self.token
        self.token = self._user_token
        try:
            yield self
        finally:
            self.token = base


def profile_from_member(member: dict[str, Any]) -> UserProfile:
    profile = member.get("profile") or {}
    return UserProfile(
        id=member["id"],
        name=member.get("name") or "",
        real_name=member.get("real_name") or profile.get("real_name") or "",
        phone=profile.get("phone") or None,
        image_192=profile.get("image_192"),
        is_admin=bool(member.get("is_admin")),
    )


def directory_for(tenant: Tenant, settings: Settings | None = None) -> SlackDirectory:
    settings = settings or get_settings()
    return SlackDirectory(
        tenant.chat.bot_access_token,
        tenant.chat.user_access_token,
        api_url=settings.slack_api_url,
        timeout=settings.http_timeout,
    )


def oauth_access(
    code: str, redirect_uri: str | None, settings: Settings | None = None
) -> dict[str, Any]:
    """Exchange an OAuth authorization code (oauth.v2.access)."""
    settings = settings or get_settings()
    if not settings.slack_client_id or not settings.slack_client_secret:
        raise ConfigurationError(
            "Slack OAuth is not configured (SLACK_CLIENT_ID / SLACK_CLIENT_SECRET)"
        )

    try:
        response = get_http_client().post(
            f"{settings.slack_api_url.rstrip('/')}/oauth.v2.access",
            data={
                k: v
                for k, v in {
                    "client_id": settings.slack_client_id,
                    "client_secret": settings.slack_client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                }.items()
                if v is not None
            },
            timeout=settings.http_timeout,
        )
        response.raise_for_status()
        payload = response.json()
    except httpx.HTTPError as e:
        raise UpstreamFailure(f"Slack oauth.v2.access failed: {e}") from e
    except ValueError as e:
        raise UpstreamFailure("Slack oauth.v2.access returned invalid JSON") from e

    if not payload.get("ok"):
        raise SlackApiError("oauth.v2.access", str(payload.get("error", "unknown_error")))
    return payload
