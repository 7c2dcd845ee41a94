from __future__ import annotations

import logging

from pydantic import BaseModel

from . import subscriptions
from .config import Settings, get_settings
from .errors import Malformed, NotFound, Unauthorized
from .models import Tenant
from .slack_client import ChatDirectory, DirectoryFactory
from .store import TenantStore

logger = logging.getLogger(__name__)

NO_PHONE_TEXT = "Oops! It doesn't look like you have a phone number set in your Slack profile."
SUBSCRIBED_TEXT = (
    "Okay! I will send an SMS message to {phone} for each message sent to this channel."
)
ALREADY_SUBSCRIBED_TEXT = (
    "You are already receiving SMS messages from this channel. "
    "To stop receiving messages, use `{command} stop`"
)
UNSUBSCRIBED_TEXT = "You will no longer receive SMS from this channel."
NOT_SUBSCRIBED_TEXT = "You are not receiving SMS from this channel."
NO_SUBSCRIPTIONS_TEXT = "You are not receiving SMS messages from any channel."
SUBSCRIPTIONS_TEXT = "You are receiving SMS messages from: {channels}"
HELP_TEXT = (
    "`{command} subscribe` will subscribe you to SMS messages from this channel (default)\n"
    "`{command} info` will show you what channels you are receiving SMS messages from\n"
    "`{command} stop` will stop sending you SMS messages from this channel"
)


class SlashCommand(BaseModel):
    token: str | None = None
    team_id: str
    user_id: str
    channel_id: str
    command: str
    text: str = ""


class CommandRouter:
    """Handles `/sms [help|info|subscribe|stop|unsubscribe]`."""

    def __init__(
        self,
        store: TenantStore,
        directories: DirectoryFactory,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.directories = directories
        self.settings = settings or get_settings()

    def handle(self, cmd: SlashCommand) -> str:
        expected_token = self.settings.slack_command_token
        if expected_token and cmd.token != expected_token:
            logger.error("Invalid command token from team %s", cmd.team_id)
            raise Unauthorized("Invalid command token", team=cmd.team_id)

        tenant = self.store.find_by_team(cmd.team_id)
        if tenant is None:
            raise NotFound(f"Unknown team ID {cmd.team_id}.", team=cmd.team_id)

        args = cmd.text.split()
        logger.info("Command received is: %s [%s]", cmd.command, ",".join(args))

        command_name = self.settings.slack_command_name
        if cmd.command != command_name:
            raise Malformed(f"Command mismatch. Expected {command_name}", team=cmd.team_id)

        subcommand = args[0].lower() if args else "subscribe"
        directory = self.directories(tenant)

        if subcommand == "help":
            logger.info("Showing help for %s on %s", cmd.user_id, cmd.team_id)
            return HELP_TEXT.format(command=command_name)
        if subcommand == "info":
            return self.info(tenant, directory, cmd.user_id)
        if subcommand in ("stop", "unsubscribe"):
            return self.unsubscribe(tenant, cmd.user_id, cmd.channel_id)
        return self.subscribe(tenant, directory, cmd.user_id, cmd.channel_id)

    def info(self, tenant: Tenant, directory: ChatDirectory, user: str) -> str:
        logger.info("Showing subscriptions for %s on %s", user, tenant.team)
        names = sorted(
            (directory.channel_name(channel) for channel in tenant.subscriptions_of(user)),
            key=str.lower,
        )
        if not names:
            return NO_SUBSCRIPTIONS_TEXT
        return SUBSCRIPTIONS_TEXT.format(channels=", ".join(f"#{name}" for name in names))

    def subscribe(self, tenant: Tenant, directory: ChatDirectory, user: str, channel: str) -> str:
        logger.info("Subscribing %s to %s on %s", user, channel, tenant.team)

        phone = directory.phone_of(user)
        if not phone:
            logger.error("%s on %s does not have a phone number set", user, tenant.team)
            return NO_PHONE_TEXT

        already = ALREADY_SUBSCRIBED_TEXT.format(command=self.settings.slack_command_name)
        if tenant.is_subscribed(user, channel):
            logger.info("%s is already subscribed to %s on %s", user, channel, tenant.team)
            return already

        self._ensure_bot_in_channel(tenant, directory, channel)

        if not subscriptions.subscribe(self.store, tenant.team, user, channel):
            return already
        return SUBSCRIBED_TEXT.format(phone=phone)

    def unsubscribe(self, tenant: Tenant, user: str, channel: str) -> str:
        logger.info("Unsubscribing %s from %s on %s", user, channel, tenant.team)
        if subscriptions.unsubscribe(self.store, tenant.team, user, channel):
            return UNSUBSCRIBED_TEXT
        return NOT_SUBSCRIBED_TEXT

    def _ensure_bot_in_channel(
        self, tenant: Tenant, directory: ChatDirectory, channel: str
    ) -> None:
        """The bot only receives a channel's events while it is a member."""
        bot_user = tenant.chat.bot_user_id
        if directory.is_member(bot_user, channel):
            return
        logger.info("Adding bot %s to %s on %s", bot_user, channel, tenant.team)
        # Bots cannot invite themselves; the installing user's token can.
        with directory.elevated() as elevated:
            elevated.invite(bot_user, channel)
