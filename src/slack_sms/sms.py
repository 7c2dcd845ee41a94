from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field
from twilio.twiml.messaging_response import MessagingResponse

from .errors import Malformed, NotFound, NotProvisioned, Unauthorized
from .models import Tenant
from .phone import digits
from .slack_client import DirectoryFactory
from .store import TenantStore
from .twilio_client import CarrierGateway

logger = logging.getLogger(__name__)

CHANNEL_TAG_RE = re.compile(r"#([a-z0-9_-]+)", re.IGNORECASE)

MISSING_TAG_TEXT = (
    "Your message was not posted. Include the channel to post to, "
    "for example: #general Running 5 minutes late"
)


class InboundSms(BaseModel):
    """Twilio's inbound message webhook fields."""

    model_config = ConfigDict(populate_by_name=True)

    account_sid: str = Field(alias="AccountSid")
    from_: str = Field(alias="From")
    to: str = Field(alias="To")
    body: str = Field("", alias="Body")


@dataclass(frozen=True)
class TaggedMessage:
    channel: str
    text: str


@dataclass(frozen=True)
class PostedMessage:
    channel: str
    text: str
    username: str


def extract_channel_tag(body: str) -> TaggedMessage:
    """
    Split "#general hello there" into channel "general" and text "hello there".

    The first #tag anywhere in the body wins; it is removed together with
    the whitespace around it. A tag with no text is rejected.
    """
    match = CHANNEL_TAG_RE.search(body)
    if match is None:
        raise Malformed("Message has no #channel tag")

    before = body[: match.start()].rstrip()
    after = body[match.end() :].lstrip()
    text = " ".join(part for part in (before, after) if part)
    if not text:
        raise Malformed("Message has nothing to post", channel=match.group(1))
    return TaggedMessage(channel=match.group(1), text=text)


def twiml_reply(text: str | None = None) -> str:
    """TwiML body for the webhook response; empty means no SMS goes back."""
    response = MessagingResponse()
    if text:
        response.message(text)
    return str(response)


def deliver(gateway: CarrierGateway, tenant: Tenant, number: str, message: str) -> str:
    """Send one SMS from the tenant's number."""
    if tenant.carrier is None or not tenant.phone_number:
        raise NotProvisioned("No SMS provider configured for this team", team=tenant.team)
    return gateway.send(tenant.carrier, tenant.phone_number, number, message)


def send_sms(
    store: TenantStore,
    gateway: CarrierGateway,
    team: str,
    number: str,
    message: str,
) -> str:
    tenant = store.find_by_team(team)
    if tenant is None:
        raise NotFound(f"Unknown team ID {team}.", team=team)
    return deliver(gateway, tenant, number, message)


class SMSInboundRouter:
    """Posts inbound SMS into Slack under the sender's own name and avatar."""

    def __init__(self, store: TenantStore, directories: DirectoryFactory) -> None:
        self.store = store
        self.directories = directories

    def resolve_tenant(self, sms: InboundSms) -> Tenant:
        tenant = self.store.find_by_carrier_account(sms.account_sid)
        if tenant is None:
            raise NotFound(
                f"Unknown account SID {sms.account_sid}. Incoming phone number {sms.to}",
                carrier_account=sms.account_sid,
                to=sms.to,
            )
        return tenant

    def handle(self, sms: InboundSms, tenant: Tenant | None = None) -> PostedMessage:
        tenant = tenant or self.resolve_tenant(sms)
        directory = self.directories(tenant)

        sender = directory.user_by_phone(sms.from_)
        if sender is None:
            logger.info("%s did not match a Slack user on %s", digits(sms.from_), tenant.team)
            raise Unauthorized(
                f"Unknown source phone number: {digits(sms.from_)}", team=tenant.team
            )

        try:
            tagged = extract_channel_tag(sms.body)
        except Malformed as e:
            e.context.update(team=tenant.team, user=sender.id)
            raise

        username = f"{sender.display_name} (via SMS)"
        directory.post_message(
            f"#{tagged.channel}",
            tagged.text,
            username=username,
            icon_url=sender.image_192,
        )
        logger.info("Posted SMS from %s to #%s on %s", sender.id, tagged.channel, tenant.team)
        return PostedMessage(channel=tagged.channel, text=tagged.text, username=username)
