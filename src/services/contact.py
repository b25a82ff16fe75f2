"""Normalize free-form contact strings into scheme-prefixed links."""

from __future__ import annotations

import re
from typing import Final

from src.config.logging_config import get_logger

logger = get_logger(__name__)

_TELEGRAM_LINK: Final[re.Pattern[str]] = re.compile(
    r"^(?:https?://)?(?:www\.)?(?:t|telegram)\.me/([A-Za-z0-9_]{4,})/?$",
    re.IGNORECASE,
)
_TELEGRAM_HANDLE: Final[re.Pattern[str]] = re.compile(r"^@([A-Za-z0-9_]{4,})$")
_EMAIL: Final[re.Pattern[str]] = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
_PHONE: Final[re.Pattern[str]] = re.compile(r"^\+?[\d\s\-/().]+$")
_BARE_DOMAIN: Final[re.Pattern[str]] = re.compile(
    r"^(?:www\.)?[\w-]+(?:\.[\w-]+)*\.[A-Za-z]{2,}(?:[/?#]\S*)?$"
)
_PASSTHROUGH_SCHEMES: Final[tuple[str, ...]] = (
    "tg://",
    "mailto:",
    "tel:",
    "http://",
    "https://",
)
MIN_PHONE_DIGITS: Final[int] = 6


def telegram_resolve_link(username: str) -> str:
    return f"tg://resolve?domain={username}"


def parse_contact(raw: str | None) -> str | None:
    """Turn an extracted contact into a canonical link.

    Returns a ``tg://resolve`` deep link for Telegram handles and t.me
    links, ``mailto:`` for e-mail addresses, ``tel:`` for phone numbers and
    an ``https://`` URL for bare domains. Unrecognized input yields None.

    Example:
        >>> parse_contact("@yoga_munich")
        'tg://resolve?domain=yoga_munich'
        >>> parse_contact("+49 171 1234567")
        'tel:+491711234567'
    """
    if not raw:
        return None
    value = raw.strip()
    if not value:
        return None

    telegram = _TELEGRAM_LINK.match(value) or _TELEGRAM_HANDLE.match(value)
    if telegram:
        return telegram_resolve_link(telegram.group(1))

    if value.lower().startswith(_PASSTHROUGH_SCHEMES):
        return value

    if _EMAIL.match(value):
        return f"mailto:{value}"

    if _PHONE.match(value):
        digits = re.sub(r"[^\d+]", "", value)
        if sum(ch.isdigit() for ch in digits) >= MIN_PHONE_DIGITS:
            return f"tel:{digits}"

    if _BARE_DOMAIN.match(value):
        return f"https://{value}"

    logger.debug("contact_unrecognized", contact=value)
    return None


__all__ = ["parse_contact", "telegram_resolve_link"]
