from __future__ import annotations

import logging
from typing import Any

from .config import Settings
from .errors import UpstreamFailure
from .models import ChatCredentials, InstallRequest, Tenant
from .slack_client import ChatDirectory, DirectoryFactory, oauth_access
from .store import TenantStore

logger = logging.getLogger(__name__)

WELCOME_TEXT = "Welcome! Thanks for installing SMS!"
NON_ADMIN_TEXT = "Please contact your team admin in order to configure your SMS provider."
ADMIN_TEXT = (
    "In order to finish setting up SMS, your team needs an SMS provider account and "
    "phone number. Ask your operator to run `slack-sms-admin provision` for this team."
)


def complete_install(
    store: TenantStore,
    team: str,
    user_token: str,
    bot_token: str,
    bot_user_id: str,
) -> Tenant:
    """
    Record (or refresh) the Slack credentials of a team after OAuth.

    Safe to repeat on re-authorization: the tenant keeps its id,
    subscriptions, carrier credentials and phone number.
    """
    chat = ChatCredentials(
        user_access_token=user_token,
        bot_access_token=bot_token,
        bot_user_id=bot_user_id,
    )
    tenant = store.upsert(team, chat)
    logger.info("Installed for team %s (tenant %s, revision %s)", team, tenant.id, tenant.revision)
    return tenant


def install_request_from_oauth(payload: dict[str, Any]) -> InstallRequest:
    """Map an oauth.v2.access response onto the install fields."""
    try:
        authed_user = payload["authed_user"]
        return InstallRequest(
            team_id=payload["team"]["id"],
            access_token=authed_user["access_token"],
            bot_access_token=payload["access_token"],
            bot_user_id=payload["bot_user_id"],
            user_id=authed_user.get("id"),
        )
    except (KeyError, TypeError) as e:
        raise UpstreamFailure(f"Unexpected oauth.v2.access response: missing {e}") from e


def welcome(directory: ChatDirectory, user: str) -> None:
    """DM the installing user. Failures are logged; the install stands."""
    try:
        directory.send_direct_message(user, WELCOME_TEXT)
        hint = ADMIN_TEXT if directory.user(user).is_admin else NON_ADMIN_TEXT
        directory.send_direct_message(user, hint)
    except UpstreamFailure:
        logger.warning("Could not send welcome message to %s", user, exc_info=True)


def install_from_code(
    store: TenantStore,
    directories: DirectoryFactory,
    code: str,
    redirect_uri: str | None,
    settings: Settings | None = None,
) -> Tenant:
    payload = oauth_access(code, redirect_uri, settings)
    request = install_request_from_oauth(payload)
    tenant = complete_install(
        store,
        request.team_id,
        request.access_token,
        request.bot_access_token,
        request.bot_user_id,
    )
    if request.user_id:
        welcome(directories(tenant), request.user_id)
    return tenant
