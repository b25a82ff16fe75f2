"""Event candidate builder.

Turns extracted event fields plus the correlated messages of one trigger
into an ``EventCandidate``: validates the required fields, normalizes the
address, geocodes it, resolves the contact and derives the slug.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import pytz

from src.config.logging_config import get_logger
from src.domain.deduplication_constants import TELEGRAM_SOURCE
from src.domain.exceptions import GeocodingError
from src.domain.models import (
    AuthorInfo,
    EventCandidate,
    EventFields,
    RawMessage,
    ScrapingTarget,
)
from src.domain.protocols import GeocoderProtocol
from src.observability.metrics import CANDIDATES_TOTAL
from src.services.contact import parse_contact
from src.services.slug import generate_slug

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(tz=pytz.UTC)


@dataclass(slots=True)
class BuildContext:
    """Everything besides the extracted fields that goes into a candidate."""

    trigger: RawMessage
    target: ScrapingTarget
    description_original: str
    author: AuthorInfo | None = None
    consumed_message_ids: list[int] = field(default_factory=list)


def normalize_address(fields: EventFields, default_address: list[str]) -> list[str]:
    """Build address lines from the extracted location.

    Falls back to the source's default address when nothing was extracted.
    The venue is prepended and the city appended unless the address text
    already mentions them.

    Example:
        >>> fields = EventFields(venue="Yoga Loft", address="Main St 5", city="Berlin")
        >>> normalize_address(fields, [])
        ['Yoga Loft', 'Main St 5', 'Berlin']
    """
    address = fields.address
    if not address and not fields.venue and not fields.city:
        if not default_address:
            return []
        address = ",".join(default_address)

    lines = [part.strip() for part in address.split(",")] if address else []
    lines = [line for line in lines if line]
    if fields.venue and fields.venue not in (address or ""):
        lines.insert(0, fields.venue.strip())
    if fields.city and fields.city not in (address or ""):
        lines.append(fields.city.strip())
    return lines


class CandidateBuilder:
    """Validates extracted fields and assembles event candidates."""

    def __init__(
        self,
        geocoder: GeocoderProtocol | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize builder.

        Args:
            geocoder: Address geocoder; coordinates stay empty without one
            clock: Source of the current time for the past-date check
        """
        self.geocoder = geocoder
        self.clock = clock

    def build(self, fields: EventFields, context: BuildContext) -> EventCandidate | None:
        """Build a candidate, or return None when the message must be skipped.

        Skip checks run in order: canonical copy elsewhere, no event data,
        no name, no or past start date, no location, unresolvable author
        contact. Each skip is logged as ``candidate_skipped`` with a reason.
        """
        if fields.existing_source:
            return self._skip(context, "existing_source", source=fields.existing_source)
        if not fields.has_event_data:
            return self._skip(context, "no_event_data")
        name = (fields.name or "").strip()
        if not name:
            return self._skip(context, "no_name")
        if fields.start_date is None:
            return self._skip(context, "no_start_date")
        start_at = fields.start_date.astimezone(pytz.UTC)
        if start_at < self.clock():
            return self._skip(context, "past_start_date", start_at=start_at.isoformat())

        address = normalize_address(fields, context.target.default_address)
        if not address:
            return self._skip(context, "no_address")

        contact = parse_contact(fields.contact)
        author = context.author
        author_link = author.link if author else None
        if fields.contact_author_for_more:
            if not author_link:
                return self._skip(context, "no_author_link")
            contact = author_link

        coordinates = self._geocode(address, context)
        end_at = fields.end_date.astimezone(pytz.UTC) if fields.end_date else None

        candidate = EventCandidate(
            name=name,
            slug=generate_slug(name, start_at, end_at),
            start_at=start_at,
            end_at=end_at,
            description=fields.description,
            description_original=context.description_original,
            summary=fields.summary,
            address=address,
            latitude=coordinates[0] if coordinates else None,
            longitude=coordinates[1] if coordinates else None,
            price=fields.price,
            contact=contact,
            host=author.display_name if author else None,
            host_link=author_link,
            source_url=fields.url,
            message_sender_id=context.trigger.author_id,
            tags=list(fields.tags),
            source=TELEGRAM_SOURCE,
            consumed_message_ids=list(context.consumed_message_ids),
        )
        CANDIDATES_TOTAL.labels(outcome="built").inc()
        logger.info(
            "candidate_built",
            room_id=context.target.room_id,
            message_id=context.trigger.message_id,
            slug=candidate.slug,
        )
        return candidate

    def _geocode(
        self, address: list[str], context: BuildContext
    ) -> tuple[float, float] | None:
        if self.geocoder is None:
            return None
        try:
            return self.geocoder.geocode(address)
        except GeocodingError as exc:
            logger.warning(
                "geocoding_failed",
                message_id=context.trigger.message_id,
                address=address,
                error=str(exc),
            )
            return None

    def _skip(self, context: BuildContext, reason: str, **details: object) -> None:
        CANDIDATES_TOTAL.labels(outcome=reason).inc()
        logger.info(
            "candidate_skipped",
            room_id=context.target.room_id,
            message_id=context.trigger.message_id,
            reason=reason,
            **details,
        )
        return None


__all__ = ["BuildContext", "CandidateBuilder", "normalize_address", "utc_now"]
