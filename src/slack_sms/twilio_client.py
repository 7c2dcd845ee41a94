from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from .errors import UpstreamFailure
from .models import CarrierCredentials
from .phone import dialable

logger = logging.getLogger(__name__)


class CarrierGateway(Protocol):
    def send(
        self,
        credentials: CarrierCredentials,
        from_number: str,
        to: str,
        body: str,
    ) -> str: ...


def get_twilio_client(credentials: CarrierCredentials, timeout: float) -> Client:
    return Client(
        credentials.account_id,
        credentials.auth_token,
        http_client=TwilioHttpClient(timeout=timeout),
    )


class TwilioGateway:
    """Send SMS with a tenant's own Twilio account."""

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout

    def send(
        self,
        credentials: CarrierCredentials,
        from_number: str,
        to: str,
        body: str,
    ) -> str:
        client = get_twilio_client(credentials, self.timeout)
        try:
            message = client.messages.create(
                to=dialable(to),
                from_=from_number,
                body=body,
            )
        except (TwilioException, OSError) as e:
            # requests' connection and timeout errors are OSErrors
            raise UpstreamFailure(
                f"Twilio send failed: {e}", account=credentials.account_id, to=to
            ) from e

        logger.debug("Queued SMS %s to %s", message.sid, to)
        return str(message.sid)


def validate_signature(
    credentials: CarrierCredentials,
    url: str,
    params: Mapping[str, str],
    signature: str | None,
) -> bool:
    """Check X-Twilio-Signature for a webhook POST."""
    if not signature:
        return False
    return bool(RequestValidator(credentials.auth_token).validate(url, dict(params), signature))
