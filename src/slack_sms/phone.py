from __future__ import annotations

import re

NON_DIGIT_RE = re.compile(r"\D")


def digits(number: str | None) -> str:
    """Strip everything but digits: "+1 (555) 123-4567" -> "15551234567"."""
    if not number:
        return ""
    return NON_DIGIT_RE.sub("", number)


def phone_matches(sender: str, stored: str | None) -> bool:
    """
    True when the stored profile number appears inside the sender number.

    Both sides are reduced to digits first. The containment test lets a
    profile number without a country code ("5551234567") match a full
    inbound number ("+15551234567").
    """
    stored_digits = digits(stored)
    if not stored_digits:
        return False
    return stored_digits in digits(sender)


def dialable(number: str) -> str:
    """Digits only, keeping a leading '+' when the number had one."""
    cleaned = digits(number)
    if number.strip().startswith("+"):
        return f"+{cleaned}"
    return cleaned
