from __future__ import annotations

import argparse
import csv
from collections.abc import Iterable, Sequence

from .config import configure_logging, get_settings
from .db import SessionLocal, init_db
from .errors import BridgeError
from .install import complete_install
from .models import Tenant
from .store import TenantStore


def _mask(secret: str | None) -> str:
    """Show only the tail of a credential."""
    if not secret:
        return "-"
    return f"...{secret[-4:]}"


def get_store() -> TenantStore:
    init_db()
    return TenantStore(SessionLocal, max_conflict_retries=get_settings().max_conflict_retries)


def print_tenants(tenants: Iterable[Tenant]) -> None:
    """Print tenants in a human-readable form."""
    for tenant in tenants:
        print("-" * 80)
        print(f"Team {tenant.team} | id={tenant.id} | revision={tenant.revision}")
        print(
            f"  bot user: {tenant.chat.bot_user_id}  "
            f"bot token: {_mask(tenant.chat.bot_access_token)}"
        )
        if tenant.carrier:
            print(
                f"  carrier account: {tenant.carrier.account_id}  "
                f"auth token: {_mask(tenant.carrier.auth_token)}"
            )
        else:
            print("  carrier account: (not provisioned)")
        print(f"  phone: {tenant.phone_number or '-'}")
        for channel, users in sorted(tenant.channels.items()):
            print(f"  {channel}: {', '.join(sorted(users)) or '(no subscribers)'}")
        print()


def export_subscriptions_csv(tenants: Iterable[Tenant], csv_path: str) -> int:
    """Write one row per (team, channel, user) subscription. Returns the row count."""
    rows = 0
    with open(csv_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["team", "phone_number", "channel", "user"])
        for tenant in tenants:
            for channel, users in sorted(tenant.channels.items()):
                for user in sorted(users):
                    writer.writerow([tenant.team, tenant.phone_number or "", channel, user])
                    rows += 1
    return rows


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slack-sms-admin",
        description="Inspect and provision the tenants stored by the Slack/SMS bridge.",
    )
    sub = parser.add_subparsers(dest="action", required=True)

    list_cmd = sub.add_parser("list", help="Show installed teams and their subscriptions.")
    list_cmd.add_argument(
        "--csv",
        type=str,
        default="",
        help="Optional path to export subscriptions as CSV. If omitted, only prints to stdout.",
    )

    provision = sub.add_parser(
        "provision", help="Attach Twilio credentials and a phone number to a team."
    )
    provision.add_argument("--team", required=True, help="Slack team id, e.g. T0123456")
    provision.add_argument("--account-sid", required=True)
    provision.add_argument("--auth-token", required=True)
    provision.add_argument(
        "--phone", required=True, help="The team's Twilio number, e.g. +15551230000"
    )

    install = sub.add_parser(
        "install", help="Record Slack credentials without going through OAuth."
    )
    install.add_argument("--team", required=True)
    install.add_argument("--user-token", required=True)
    install.add_argument("--bot-token", required=True)
    install.add_argument("--bot-user", required=True)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    store = get_store()

    try:
        if args.action == "list":
            tenants = store.list_tenants()
            if args.csv:
                rows = export_subscriptions_csv(tenants, args.csv)
                print(f"Exported {rows} subscriptions to {args.csv}")
            else:
                print_tenants(tenants)
        elif args.action == "provision":
            tenant = store.provision_carrier(
                args.team, args.account_sid, args.auth_token, args.phone
            )
            print(f"Provisioned {tenant.team} with {tenant.phone_number}")
        elif args.action == "install":
            tenant = complete_install(
                store, args.team, args.user_token, args.bot_token, args.bot_user
            )
            print(f"Installed {tenant.team} (id {tenant.id}, revision {tenant.revision})")
    except BridgeError as e:
        print(f"error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
