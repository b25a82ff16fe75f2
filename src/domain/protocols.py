"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that adapters must implement.
"""

from datetime import datetime
from typing import Any, Protocol

from src.domain.models import (
    AuthorInfo,
    EventCandidate,
    EventFields,
    PersistedEvent,
    RawMessage,
    ScrapingTarget,
    SourceEntity,
    StoredImage,
)


class TelegramClientProtocol(Protocol):
    """Protocol for the messaging platform client."""

    def find_dialog_id_by_name(self, name: str) -> str | None:
        """Look up a chat id among the account's dialogs by title.

        Args:
            name: Dialog title to match exactly

        Returns:
            Chat id or None when no dialog matches
        """
        ...

    def get_source_entity(self, room_id: str) -> SourceEntity:
        """Resolve a room id to its entity (name and forum flag).

        Raises:
            TelegramAPIError: When the room cannot be resolved
        """
        ...

    def fetch_messages(
        self,
        room_id: str,
        min_id: int | None = None,
        limit: int = 50,
        topic_id: int | None = None,
    ) -> list[RawMessage]:
        """Fetch messages newer than ``min_id``.

        Args:
            room_id: Chat id
            min_id: Only return messages with a higher id
            limit: Maximum number of messages
            topic_id: Restrict to replies of one forum topic

        Returns:
            Raw messages, newest first as the platform returns them

        Raises:
            RateLimitError: When the platform asks to back off for too long
        """
        ...

    def download_media(self, message: RawMessage) -> bytes | None:
        """Download the attachment of a message.

        Raises:
            FatalSourceError: When the file reference expired
            MediaDownloadError: On any other download failure
        """
        ...

    def get_author_info(self, message: RawMessage) -> AuthorInfo | None:
        """Profile of the original author of a message, if resolvable."""
        ...

    def forget_room(self, room_id: str) -> None:
        """Release per-room state kept between fetch and media download."""
        ...


class EventExtractorProtocol(Protocol):
    """Protocol for the structured extraction service."""

    def extract_event_fields(
        self,
        text: str,
        reference_date: datetime,
        image_data_urls: list[str] | None = None,
    ) -> EventFields:
        """Extract event fields from message text and images.

        Args:
            text: HTML text of the trigger and its adjacent messages
            reference_date: Message date used to resolve relative dates
            image_data_urls: JPEG data URLs of attached flyers

        Returns:
            Validated extraction result

        Raises:
            LLMAPIError: When the service fails or returns invalid data
        """
        ...


class GeocoderProtocol(Protocol):
    """Protocol for address geocoding."""

    def geocode(self, address_lines: list[str]) -> tuple[float, float] | None:
        """Return (latitude, longitude) for an address, or None if unknown."""
        ...


class ImageStorageProtocol(Protocol):
    """Protocol for the image hosting service."""

    def upload_image(self, image_bytes: bytes, slug: str, token: str) -> str:
        """Upload an image under ``{slug}/{token}`` and return its URL.

        Raises:
            ImageStorageError: On upload failure
        """
        ...

    def list_images(self) -> list[StoredImage]:
        """List every stored image.

        Raises:
            ImageStorageError: On listing failure
        """
        ...

    def delete_images(self, public_ids: list[str]) -> int:
        """Delete images by public id, returning how many were deleted."""
        ...


class RepositoryProtocol(Protocol):
    """Protocol for event and checkpoint persistence."""

    def get_scraping_targets(self) -> list[ScrapingTarget]:
        """Return every configured scraping target."""
        ...

    def get_scraping_target(self, room_id: str) -> ScrapingTarget | None:
        """Return one scraping target by its room id."""
        ...

    def save_scraping_target(self, target: ScrapingTarget) -> None:
        """Insert a scraping target, replacing any existing one."""
        ...

    def update_scraping_target(self, room_id: str, updates: dict[str, Any]) -> None:
        """Apply checkpoint field updates to a scraping target.

        Args:
            room_id: Room id the target is currently stored under
            updates: Mapping of ScrapingTarget field names to new values
        """
        ...

    def get_event(self, event_id: int) -> PersistedEvent | None:
        """Return an event by database id."""
        ...

    def get_event_by_slug(self, slug: str) -> PersistedEvent | None:
        """Return an event by its slug."""
        ...

    def list_events(self) -> list[PersistedEvent]:
        """Return every stored event ordered by id."""
        ...

    def upsert_event(self, candidate: EventCandidate) -> PersistedEvent:
        """Insert an event or update the one sharing its slug."""
        ...

    def update_event(self, event: PersistedEvent) -> PersistedEvent:
        """Overwrite the mutable fields of a stored event.

        Raises:
            MergeConflictError: When the event no longer exists
        """
        ...

    def delete_event(self, event_id: int) -> bool:
        """Delete an event, returning False when it was already gone."""
        ...

    def get_referenced_image_urls(self) -> set[str]:
        """Return every image URL referenced by any event."""
        ...

    def get_cached_geocode(self, address_key: str) -> tuple[float, float] | None:
        """Return cached coordinates for an address key."""
        ...

    def save_geocode(self, address_key: str, latitude: float, longitude: float) -> None:
        """Cache coordinates for an address key."""
        ...
