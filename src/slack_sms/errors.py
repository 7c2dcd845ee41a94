from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """
    Base class for every failure scoped to a single request.

    `context` carries the identifiers (team, channel, user, ...) needed to
    diagnose the failure from the logs alone.
    """

    status_code: int = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


class NotFound(BridgeError):
    """Unknown team, carrier account or phone number."""

    status_code = 400


class Conflict(BridgeError):
    """A write carried a revision that is no longer current."""

    status_code = 409


class Unauthorized(BridgeError):
    """Bad command token, bad carrier signature or unrecognised SMS sender."""

    status_code = 401


class Forbidden(BridgeError):
    """Caller is not allowed to reach an internal endpoint."""

    status_code = 403


class UpstreamFailure(BridgeError):
    """Slack or the carrier failed or timed out."""

    status_code = 502


class Malformed(BridgeError):
    """Request content that cannot be acted on (missing tag, unknown event type, ...)."""

    status_code = 400


class NotProvisioned(BridgeError):
    """The tenant has no carrier credentials or phone number yet."""

    status_code = 409


class ConfigurationError(BridgeError):
    """Stored data violates an invariant (duplicate keys, undecodable document)."""

    status_code = 500
