from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, ConfigDict

from .config import Settings, get_settings
from .errors import BridgeError, Malformed, NotFound, NotProvisioned
from .models import Tenant, ts_value
from .slack_client import ChatDirectory, DirectoryFactory
from .sms import deliver
from .store import TenantStore
from .twilio_client import CarrierGateway

logger = logging.getLogger(__name__)


class SlackEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    channel: str | None = None
    user: str | None = None
    text: str = ""
    ts: str | None = None
    subtype: str | None = None
    hidden: bool = False


class EventPayload(BaseModel):
    """Body of a POST from the Slack Events API."""

    model_config = ConfigDict(extra="ignore")

    type: str
    team_id: str | None = None
    challenge: str | None = None
    event: SlackEvent | None = None


@dataclass
class DeliveryFailure:
    user: str
    reason: str


@dataclass
class DeliveryReport:
    """Per-recipient outcome of one fan-out. Partial delivery is normal."""

    channel: str
    sent: list[str] = field(default_factory=list)
    failures: list[DeliveryFailure] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.sent) + len(self.failures)


@dataclass
class EventOutcome:
    status: Literal["challenge", "skipped", "duplicate", "delivered"]
    challenge: str | None = None
    report: DeliveryReport | None = None


def format_sms(channel_name: str, author: str, text: str) -> str:
    return f"#{channel_name}:\n{author}: {text}"


class ChatEventRouter:
    """
    Turns Slack channel messages into SMS for the channel's subscribers.

    Payloads are classified as URL verification, skippable (hidden or with
    an unsupported subtype), or deliverable. Deliverable events pass the
    timestamp watermark check before anything is sent.
    """

    def __init__(
        self,
        store: TenantStore,
        directories: DirectoryFactory,
        gateway: CarrierGateway,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.directories = directories
        self.gateway = gateway
        self.settings = settings or get_settings()

    def handle(self, payload: EventPayload) -> EventOutcome:
        if payload.type == "url_verification":
            return EventOutcome("challenge", challenge=payload.challenge or "")

        if payload.type != "event_callback":
            raise Malformed(f"Unknown event type: {payload.type}", team=payload.team_id)

        event = payload.event
        if event is None:
            raise Malformed("event_callback without an event", team=payload.team_id)

        logger.info("Received event %s for %s on %s", event.type, event.channel, payload.team_id)

        if event.hidden:
            logger.info("Skipping hidden event: %s", event.type)
            return EventOutcome("skipped")

        if event.type != "message":
            logger.info("Skipping unsupported event type: %s", event.type)
            return EventOutcome("skipped")

        if event.subtype and event.subtype not in self.settings.allowed_message_subtypes:
            logger.info("Skipping unsupported message subtype: %s", event.subtype)
            return EventOutcome("skipped")

        if not payload.team_id or not event.channel or not event.user:
            raise Malformed(
                "Message event is missing team, channel or user",
                team=payload.team_id,
                channel=event.channel,
            )

        if event.ts is not None:
            try:
                ts_value(event.ts)
            except ValueError as e:
                raise Malformed(str(e), team=payload.team_id, channel=event.channel) from e

        tenant = self.store.find_by_team(payload.team_id)
        if tenant is None:
            raise NotFound(f"Unknown team ID {payload.team_id}.", team=payload.team_id)

        return self._deliver(tenant, event)

    def _deliver(self, tenant: Tenant, event: SlackEvent) -> EventOutcome:
        channel = event.channel or ""
        recipients = tenant.recipients(channel)
        report = DeliveryReport(channel)
        if not recipients:
            if not self._claim(tenant, event):
                return EventOutcome("duplicate")
            return EventOutcome("delivered", report=report)

        if tenant.carrier is None or not tenant.phone_number:
            raise NotProvisioned(
                "No SMS provider configured for this team", team=tenant.team, channel=channel
            )

        directory = self.directories(tenant)
        message = format_sms(
            directory.channel_name(channel),
            directory.user(event.user or "").display_name,
            event.text,
        )

        if not self._claim(tenant, event):
            logger.info(
                "Skipping potentially duplicate event on %s for %s (ts %s)",
                channel,
                tenant.team,
                event.ts,
            )
            return EventOutcome("duplicate")

        logger.info(
            "Sending SMS for %s on %s to %d recipients", channel, tenant.team, len(recipients)
        )
        self._fan_out(tenant, directory, sorted(recipients), message, report)
        return EventOutcome("delivered", report=report)

    def _is_duplicate(self, ts: str, watermark: str) -> bool:
        if self.settings.event_dedup_allow_equal:
            return ts_value(ts) < ts_value(watermark)
        return ts_value(ts) <= ts_value(watermark)

    def _claim(self, tenant: Tenant, event: SlackEvent) -> bool:
        """
        Advance the watermark to the event's ts before sending.

        The write is conditional on the tenant revision, so of two concurrent
        deliveries of the same event only one can claim it.
        """
        scope = self.settings.event_dedup_scope
        if scope == "off" or not event.ts:
            return True

        ts = event.ts
        channel = event.channel if scope == "channel" else None
        claimed = False

        def apply(current: Tenant) -> bool:
            nonlocal claimed
            watermark = current.watermark(channel)
            if watermark is not None and self._is_duplicate(ts, watermark):
                claimed = False
                return False
            claimed = True
            return current.advance_watermark(ts, channel)

        self.store.update(tenant.team, apply)
        return claimed

    def _fan_out(
        self,
        tenant: Tenant,
        directory: ChatDirectory,
        recipients: list[str],
        message: str,
        report: DeliveryReport,
    ) -> None:
        for user in recipients:
            try:
                number = directory.phone_of(user)
                if not number:
                    raise Malformed(
                        "Subscriber has no phone number", team=tenant.team, user=user
                    )
                deliver(self.gateway, tenant, number, message)
            except BridgeError as e:
                logger.warning(
                    "SMS to %s for %s on %s failed: %s", user, report.channel, tenant.team, e
                )
                report.failures.append(DeliveryFailure(user, str(e)))
            else:
                report.sent.append(user)
