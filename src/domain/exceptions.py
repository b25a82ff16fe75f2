"""Custom exception hierarchy for the event harvester.

Following error taxonomy: retryable, non-retryable, validation, rate-limit,
plus the per-source fatal class that the worker pool collects.
"""


class EventHarvesterError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(EventHarvesterError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(EventHarvesterError):
    """Errors that should not be retried (validation, auth, logic errors)."""

    pass


class ValidationError(NonRetryableError):
    """Data validation errors."""

    pass


class RateLimitError(RetryableError):
    """API rate limit exceeded."""

    def __init__(self, retry_after: int | None = None) -> None:
        """Initialize with optional retry_after seconds."""
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after: {retry_after}s")


class LLMAPIError(RetryableError):
    """Structured extraction call failed (transport, API or parsing)."""

    pass


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class TelegramAPIError(RetryableError):
    """Messaging platform request failed (entity lookup, fetch)."""

    pass


class MediaDownloadError(RetryableError):
    """Downloading a message attachment failed."""

    pass


class ImageStorageError(RetryableError):
    """Uploading, listing or deleting stored images failed."""

    pass


class GeocodingError(RetryableError):
    """Geocoding service could not be reached or answered with an error."""

    pass


class FingerprintError(ValidationError):
    """A fingerprint token does not decode to a 64-bit perceptual hash."""

    pass


class FatalSourceError(NonRetryableError):
    """Unrecoverable condition for one scraping target.

    Aborts only the affected source. The worker pool collects these and the
    run exits non-zero once every other source has finished.
    """

    def __init__(self, room_id: str, reason: str) -> None:
        """Initialize with the affected room id and a human readable reason."""
        self.room_id = room_id
        self.reason = reason
        super().__init__(f"{room_id}: {reason}")


class MergeConflictError(NonRetryableError):
    """An event referenced by a duplicate pair vanished before the merge."""

    def __init__(self, event_id: int) -> None:
        """Initialize with the id of the missing event."""
        self.event_id = event_id
        super().__init__(f"Event {event_id} no longer exists")
