from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(part.strip() for part in raw.split(",") if part.strip())


class Settings(BaseModel):
    # Database URL:
    # - Default for local dev: sqlite file in the project root (slack_sms.db)
    # - Override in Docker / production using the DATABASE_URL env var
    database_url: str = os.getenv(
        "DATABASE_URL",
        f"sqlite:///{(Path(__file__).resolve().parents[2] / 'slack_sms.db')}",
    )

    # --- Slack app settings ---
    slack_client_id: str | None = os.getenv("SLACK_CLIENT_ID")
    slack_client_secret: str | None = os.getenv("SLACK_CLIENT_SECRET")
    # Verification token sent with every slash command; unset disables the check.
    slack_command_token: str | None = os.getenv("SLACK_COMMAND_TOKEN")
    slack_command_name: str = os.getenv("SLACK_COMMAND_NAME", "/sms")
    slack_api_url: str = os.getenv("SLACK_API_URL", "https://slack.com/api")

    # Externally reachable base URL, used for the OAuth redirect and for
    # recomputing the URL Twilio signed.
    public_base_url: str | None = os.getenv("PUBLIC_BASE_URL")

    # Seconds allowed for any single Slack or Twilio round trip.
    http_timeout: float = float(os.getenv("HTTP_TIMEOUT", "10"))

    # Re-read-and-retry attempts after a stale-revision write.
    max_conflict_retries: int = int(os.getenv("MAX_CONFLICT_RETRIES", "3"))

    # Message subtypes that are still relayed as SMS (everything else is skipped).
    allowed_message_subtypes: tuple[str, ...] = _env_list("ALLOWED_MESSAGE_SUBTYPES")

    # Duplicate chat event suppression by timestamp watermark.
    event_dedup_scope: Literal["team", "channel", "off"] = os.getenv(  # type: ignore[assignment]
        "EVENT_DEDUP_SCOPE", "team"
    )
    event_dedup_allow_equal: bool = _env_bool("EVENT_DEDUP_ALLOW_EQUAL")

    # Required in X-Admin-Token for internal endpoints such as /twilio/send.
    admin_token: str | None = os.getenv("ADMIN_TOKEN")

    verify_twilio_signature: bool = _env_bool("VERIFY_TWILIO_SIGNATURE")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings | None = None) -> None:
    """Apply LOG_LEVEL to the root logger."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="[%(asctime)s] [%(levelname)-8s] %(name)s: %(message)s",
    )
