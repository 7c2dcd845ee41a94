from __future__ import annotations

import logging

from .models import Tenant
from .store import TenantStore

logger = logging.getLogger(__name__)


def subscribe(store: TenantStore, team: str, user: str, channel: str) -> bool:
    """
    Add `user` to the SMS recipients of `channel`.

    Returns False (and writes nothing) when the user was already subscribed.
    """
    changed = False

    def apply(tenant: Tenant) -> bool:
        nonlocal changed
        changed = tenant.add_subscriber(user, channel)
        return changed

    store.update(team, apply)
    if changed:
        logger.info("Subscribed %s to %s on %s", user, channel, team)
    return changed


def unsubscribe(store: TenantStore, team: str, user: str, channel: str) -> bool:
    """
    Remove `user` from the SMS recipients of `channel`.

    Returns False (and writes nothing) when the user was not subscribed.
    """
    changed = False

    def apply(tenant: Tenant) -> bool:
        nonlocal changed
        changed = tenant.remove_subscriber(user, channel)
        return changed

    store.update(team, apply)
    if changed:
        logger.info("Unsubscribed %s from %s on %s", user, channel, team)
    return changed
