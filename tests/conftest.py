from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from slack_sms.config import Settings
from slack_sms.db import init_db
from slack_sms.errors import UpstreamFailure
from slack_sms.install import complete_install
from slack_sms.models import CarrierCredentials, UserProfile
from slack_sms.phone import phone_matches
from slack_sms.store import TenantStore

TEAM = "T1"
CARRIER_ACCOUNT = "AC123"
TENANT_PHONE = "+15551230000"


class FakeDirectory:
    """In-memory stand-in for the Slack directory."""

    def __init__(
        self,
        users: dict[str, UserProfile] | None = None,
        channels: dict[str, str] | None = None,
        members: dict[str, set[str]] | None = None,
    ) -> None:
        self.users = users or {}
        self.channels = channels or {}
        self.members = members or {}
        self.posted: list[dict[str, Any]] = []
        self.direct_messages: list[tuple[str, str]] = []
        self.invites: list[tuple[str, str, str]] = []
        self.mode = "bot"
        self.fail_invite = False

    def channel_name(self, channel: str) -> str:
        return self.channels[channel]

    def user(self, user: str) -> UserProfile:
        if user not in self.users:
            raise UpstreamFailure("Slack users.info returned user_not_found", user=user)
        return self.users[user]

    def phone_of(self, user: str) -> str | None:
        return self.user(user).phone

    def user_by_phone(self, phone: str) -> UserProfile | None:
        for profile in self.users.values():
            if phone_matches(phone, profile.phone):
                return profile
        return None

    def post_message(
        self,
        channel: str,
        text: str,
        *,
        username: str | None = None,
        icon_url: str | None = None,
    ) -> None:
        self.posted.append(
            {"channel": channel, "text": text, "username": username, "icon_url": icon_url}
        )

    def send_direct_message(self, user: str, text: str) -> None:
        self.direct_messages.append((user, text))

    def is_member(self, user: str, channel: str) -> bool:
        return user in self.members.get(channel, set())

    def invite(self, user: str, channel: str) -> None:
        if self.mode != "user":
            raise UpstreamFailure("Slack conversations.invite returned not_allowed_token_type")
        if self.fail_invite:
            raise UpstreamFailure("Slack conversations.invite returned restricted_action")
        self.members.setdefault(channel, set()).add(user)
        self.invites.append((user, channel, self.mode))

    @contextmanager
    def elevated(self) -> Iterator[FakeDirectory]:
        previous = self.mode
        self.mode = "user"
        try:
            yield self
        finally:
            self.mode = previous


class FakeGateway:
    """Records every send; numbers in `fail_for` raise like a carrier rejection."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail_for = fail_for or set()

    def send(self, credentials: CarrierCredentials, from_number: str, to: str, body: str) -> str:
        self.sent.append(
            {"account": credentials.account_id, "from": from_number, "to": to, "body": body}
        )
        if to in self.fail_for:
            raise UpstreamFailure("Twilio send failed: rejected", to=to)
        return f"SM{len(self.sent):04d}"


@pytest.fixture
def session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def store(session_factory: sessionmaker[Session]) -> TenantStore:
    return TenantStore(session_factory, max_conflict_retries=3)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        slack_command_token=None,
        slack_command_name="/sms",
        allowed_message_subtypes=(),
        event_dedup_scope="team",
        event_dedup_allow_equal=False,
        verify_twilio_signature=False,
        admin_token=None,
    )


@pytest.fixture
def alice() -> UserProfile:
    return UserProfile(
        id="U1",
        name="alice",
        real_name="Alice",
        phone="+1 (555) 123-4567",
        image_192="https://avatars.example/alice_192.png",
    )


@pytest.fixture
def directory(alice: UserProfile) -> FakeDirectory:
    return FakeDirectory(
        users={alice.id: alice},
        channels={"C1": "general", "C2": "random"},
        members={"C1": {"UBOT"}},
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def installed(store: TenantStore) -> str:
    """Team T1 installed but without a carrier."""
    complete_install(store, TEAM, "xoxp-user", "xoxb-bot", "UBOT")
    return TEAM


@pytest.fixture
def provisioned(store: TenantStore, installed: str) -> str:
    """Team T1 installed with a Twilio account and number."""
    store.provision_carrier(installed, CARRIER_ACCOUNT, "twilio-secret", TENANT_PHONE)
    return installed
