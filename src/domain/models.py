"""Domain models for the Telegram event harvester.

All models use Pydantic v2 for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Any

import pytz
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

EXTRACTION_DEFAULT_TIMEZONE = pytz.timezone("Europe/Berlin")
"""Timezone assumed for extracted dates that come back without an offset."""


class AnnotationType(str, Enum):
    """Style annotation kinds attached to a message text."""

    BOLD = "bold"
    ITALIC = "italic"
    UNDERLINE = "underline"
    STRIKETHROUGH = "strikethrough"
    CODE = "code"
    PRE = "pre"
    TEXT_LINK = "text_link"
    TEXT_MENTION = "text_mention"
    MENTION = "mention"
    HASHTAG = "hashtag"
    CASHTAG = "cashtag"
    BOT_COMMAND = "bot_command"
    URL = "url"
    EMAIL = "email"
    PHONE_NUMBER = "phone_number"
    SPOILER = "spoiler"
    BLOCKQUOTE = "blockquote"
    UNKNOWN = "unknown"


class MediaKind(str, Enum):
    """Attachment type of a raw message."""

    NONE = "none"
    PHOTO = "photo"
    DOCUMENT = "document"
    OTHER = "other"


class StyleAnnotation(BaseModel):
    """Formatting span over a message text.

    Offsets and lengths count UTF-16 code units, as the messaging platform
    reports them.
    """

    model_config = ConfigDict(frozen=True)

    type: AnnotationType = Field(..., description="Annotation kind")
    offset: int = Field(..., ge=0, description="Start offset (UTF-16 units)")
    length: int = Field(..., ge=0, description="Span length (UTF-16 units)")
    url: str | None = Field(default=None, description="Target URL for text links")
    user_id: int | None = Field(
        default=None, description="Mentioned user id for text mentions"
    )

    @property
    def end(self) -> int:
        return self.offset + self.length


class RawMessage(BaseModel):
    """Single message fetched from a scraping target.

    Immutable once fetched and never persisted; each run fetches a fresh
    window of messages.
    """

    model_config = ConfigDict(frozen=True)

    message_id: int = Field(..., description="Per-room monotonically increasing id")
    room_id: str = Field(..., description="Room the message was fetched from")
    author_id: str | None = Field(
        default=None,
        description="Marked peer id of the original author (forward origin or sender)",
    )
    date: datetime = Field(..., description="Message timestamp (UTC)")
    text: str = Field(default="", description="Plain message text or caption")
    annotations: list[StyleAnnotation] = Field(
        default_factory=list, description="Style annotations over the text"
    )
    media_kind: MediaKind = Field(default=MediaKind.NONE, description="Attachment")
    mime_type: str | None = Field(default=None, description="Document MIME type")
    topic_id: int | None = Field(default=None, description="Forum topic id")
    forwarded_from_name: str | None = Field(
        default=None, description="Display name of a forward whose origin is hidden"
    )

    @property
    def has_media(self) -> bool:
        return self.media_kind != MediaKind.NONE

    @property
    def is_image(self) -> bool:
        """Photo attachment, or a document carrying an image MIME type."""
        if self.media_kind == MediaKind.PHOTO:
            return True
        if self.media_kind == MediaKind.DOCUMENT:
            return bool(self.mime_type and self.mime_type.startswith("image/"))
        return False


class ScrapingTarget(BaseModel):
    """A monitored chat, channel or forum with its checkpoint state.

    Created by configuration; the cursor only ever moves forward.
    """

    room_id: str = Field(..., description="Chat id, or 'resolveName:<title>'")
    name: str | None = Field(default=None, description="Human readable name")
    last_message_id: int | None = Field(
        default=None, description="Highest message id already consumed"
    )
    last_message_time: datetime | None = Field(
        default=None, description="Timestamp of the highest consumed message"
    )
    messages_consumed: int = Field(default=0, ge=0, description="Total messages read")
    scraped_events: int = Field(default=0, ge=0, description="Total events saved")
    last_error: str | None = Field(default=None, description="Last failure message")
    last_run_finished_at: datetime | None = Field(
        default=None, description="When the last run for this target ended"
    )
    default_address: list[str] = Field(
        default_factory=list,
        description="Address lines used when a message omits its location",
    )
    topic_ids: list[int] = Field(
        default_factory=list,
        description="Forum topics to read; [-1] reads all topics",
    )


class SourceEntity(BaseModel):
    """Resolved chat entity for a scraping target."""

    room_id: str
    name: str
    is_forum: bool = False


class AuthorInfo(BaseModel):
    """Profile of the original author of a message."""

    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None
    title: str | None = Field(default=None, description="Channel or group title")

    @property
    def display_name(self) -> str | None:
        """Host name shown on the event, e.g. ``Jane Doe (@jane)``."""
        first, last, user = self.first_name, self.last_name, self.username
        if first and last and user:
            return f"{first} {last} (@{user})"
        if first and last:
            return f"{first} {last}"
        if first and user:
            return f"{first} (@{user})"
        if first:
            return first
        if self.title:
            return self.title
        return user or None

    @property
    def link(self) -> str | None:
        if not self.username:
            return None
        return f"tg://resolve?domain={self.username}"


class EventFields(BaseModel):
    """Fields returned by the structured extraction service.

    Keys arrive in camelCase (``hasEventData``, ``startDate``); every field
    except ``has_event_data`` is optional.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    has_event_data: bool = Field(default=False)
    name: str | None = None
    description: str | None = None
    description_brief: str | None = None
    summary: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    url: str | None = None
    contact: str | None = None
    contact_author_for_more: bool = False
    price: str | None = None
    venue: str | None = None
    address: str | None = None
    city: str | None = None
    tags: list[str] = Field(default_factory=list)
    emojis: str | None = None
    existing_source: str | None = None

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _blank_date_is_missing(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_event_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = EXTRACTION_DEFAULT_TIMEZONE.localize(value)
        return value.astimezone(pytz.UTC)

    @field_validator("price", mode="before")
    @classmethod
    def _price_as_text(cls, value: Any) -> Any:
        if isinstance(value, int | float):
            return str(value)
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _tags_default(cls, value: Any) -> Any:
        return value or []


class EventRecord(BaseModel):
    """Fields shared by event candidates and persisted events."""

    name: str = Field(..., description="Event name")
    slug: str = Field(..., description="Natural key derived from name and dates")
    start_at: datetime = Field(..., description="Start timestamp (UTC)")
    end_at: datetime | None = Field(default=None, description="End timestamp (UTC)")
    description: str | None = Field(default=None, description="HTML description")
    description_original: str | None = Field(
        default=None, description="HTML text the description was extracted from"
    )
    summary: str | None = Field(default=None, description="One sentence summary")
    address: list[str] = Field(default_factory=list, description="Address lines")
    latitude: float | None = None
    longitude: float | None = None
    price: str | None = None
    contact: str | None = Field(
        default=None, description="Scheme-prefixed contact (tg://, tel:, mailto:, URL)"
    )
    host: str | None = Field(default=None, description="Host display name")
    host_link: str | None = Field(default=None, description="Host profile deep link")
    source_url: str | None = Field(default=None, description="Event web page")
    message_sender_id: str | None = Field(
        default=None, description="Author id of the trigger message"
    )
    tags: list[str] = Field(default_factory=list)
    image_urls: list[str] = Field(default_factory=list)
    telegram_room_ids: list[str] = Field(
        default_factory=list, description="Rooms the event was announced in"
    )
    source: str = Field(
        default="telegram", description="'telegram' or a website scraper id"
    )


class EventCandidate(EventRecord):
    """Draft event built from one trigger message and its correlated messages."""

    consumed_message_ids: list[int] = Field(
        default_factory=list,
        description="Trigger plus correlated message ids, marked processed",
    )


class PersistedEvent(EventRecord):
    """Event stored in the event store."""

    id: int = Field(..., description="Database id")
    created_at: datetime
    updated_at: datetime


class DuplicateStrategy(str, Enum):
    """Strategy that flagged a duplicate pair."""

    IMAGE_HASH = "image_hash"
    TEXT_SIMILARITY = "text_similarity"
    SLUG = "slug"


class DuplicatePair(BaseModel):
    """Two persisted events suspected to describe the same event."""

    id_a: int
    id_b: int
    strategy: DuplicateStrategy
    score: float = Field(..., description="Similarity score or hash distance")


class SourceRunResult(BaseModel):
    """Outcome of processing one scraping target."""

    room_id: str
    success: bool
    messages_consumed: int = 0
    events_saved: int = 0
    error: str | None = None


class DeduplicationResult(BaseModel):
    """Result of the offline duplicate reconciliation pass."""

    pairs_found: int
    merged_events: int
    deleted_events: int
    skipped_pairs: int
    conflicts: int = 0


class ImageCleanupResult(BaseModel):
    """Result of removing stored images that no event references."""

    stored_images: int
    referenced_images: int
    unreferenced_images: int
    deleted_images: int
    freed_bytes: int


class PoolRunResult(BaseModel):
    """Outcome of one worker pool run across all scraping targets."""

    results: list[SourceRunResult] = Field(default_factory=list)
    fatal_errors: list[str] = Field(
        default_factory=list, description="Messages of sources aborted as fatal"
    )

    @property
    def exit_code(self) -> int:
        return 1 if self.fatal_errors else 0


class StoredImage(BaseModel):
    """Image resource held by the image storage service."""

    public_id: str = Field(..., description="Storage id, '{slug}/{token}'")
    secure_url: str
    size_bytes: int = Field(default=0, ge=0, description="Stored size in bytes")
