"""Slug derivation for events.

The slug is the natural key of an event: a pure function of its name,
start and end. Dates and times are taken in UTC.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timedelta
from typing import Final

import pytz

from src.domain.deduplication_constants import (
    SLUG_NAME_MAX_LENGTH,
    SLUG_TIME_COMPONENT_MIN_HOURS,
)

_UMLAUT_FOLDING: Final[dict[int, str]] = str.maketrans(
    {"ä": "ae", "ö": "oe", "ü": "ue", "Ä": "Ae", "Ö": "Oe", "Ü": "Ue", "ß": "ss"}
)
_NON_SLUG_CHARS: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9\s]")
_WHITESPACE: Final[re.Pattern[str]] = re.compile(r"\s+")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


def slugify_name(name: str) -> str:
    """Fold a name into lowercase ASCII words joined by hyphens.

    German umlauts are transliterated (``ä`` → ``ae``), other diacritics are
    stripped, punctuation and symbols (hyphens included) are dropped.

    Example:
        >>> slugify_name("Spëcial Chärs & Symbols!")
        'special-chaers-symbols'
    """
    folded = unicodedata.normalize("NFKD", name.translate(_UMLAUT_FOLDING))
    ascii_name = folded.encode("ascii", "ignore").decode("ascii").lower()
    cleaned = _NON_SLUG_CHARS.sub("", ascii_name).strip()
    hyphenated = _WHITESPACE.sub("-", cleaned)
    return hyphenated[:SLUG_NAME_MAX_LENGTH].strip("-")


def includes_time_component(start_at: datetime, end_at: datetime | None) -> bool:
    """Whether the slug carries the start time.

    Same-day events never do. Events ending on a later calendar day more than
    12 hours after their start do, and so do events without a known end.
    """
    if end_at is None:
        return True
    start, end = _as_utc(start_at), _as_utc(end_at)
    if end.date() <= start.date():
        return False
    return end - start > timedelta(hours=SLUG_TIME_COMPONENT_MIN_HOURS)


def generate_slug(name: str, start_at: datetime, end_at: datetime | None = None) -> str:
    """Derive the event slug ``{YYYY-MM-DD}[-HHMM]-{name}``.

    Example:
        >>> from datetime import datetime, UTC
        >>> generate_slug(
        ...     "Test Event",
        ...     datetime(2024, 12, 1, 19, tzinfo=UTC),
        ...     datetime(2024, 12, 1, 22, tzinfo=UTC),
        ... )
        '2024-12-01-test-event'
    """
    start = _as_utc(start_at)
    parts = [start.strftime("%Y-%m-%d")]
    if includes_time_component(start, end_at):
        parts.append(start.strftime("%H%M"))
    name_part = slugify_name(name)
    if name_part:
        parts.append(name_part)
    return "-".join(parts)


__all__ = ["generate_slug", "includes_time_component", "slugify_name"]
