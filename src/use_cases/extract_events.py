"""Extract events use case.

Walks one source's fetched messages oldest-first, picks trigger messages,
gathers their adjacent texts and images, asks the extraction service for
event fields and turns the answer into event candidates with uploaded
images.

Triggers:
- text trigger: trimmed text longer than 30 characters
- image trigger: image message whose text is 30 characters or shorter
"""

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from time import perf_counter

from src.config.logging_config import get_logger
from src.domain.correlation_constants import (
    ADJACENT_WINDOW_SECONDS,
    EXTRACTION_DELAY_SECONDS,
    MEANINGFUL_TEXT_LENGTH,
)
from src.domain.exceptions import (
    FingerprintError,
    ImageStorageError,
    LLMAPIError,
    MediaDownloadError,
    ValidationError,
)
from src.domain.models import EventCandidate, EventFields, RawMessage, ScrapingTarget
from src.domain.protocols import (
    EventExtractorProtocol,
    ImageStorageProtocol,
    TelegramClientProtocol,
)
from src.observability.metrics import PIPELINE_STAGE_DURATION_SECONDS
from src.services import image_fingerprint
from src.services.candidate_builder import BuildContext, CandidateBuilder
from src.services.correlator import find_adjacent_images, find_adjacent_texts
from src.services.formatter import format_message_html

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PreparedImage:
    """Downloaded image resized for storage, with its fingerprint token."""

    message_id: int
    jpeg_bytes: bytes
    token: str

    @property
    def data_url(self) -> str:
        return image_fingerprint.jpeg_data_url(self.jpeg_bytes)


def is_text_trigger(message: RawMessage) -> bool:
    return len(message.text.strip()) > MEANINGFUL_TEXT_LENGTH


def is_image_trigger(message: RawMessage) -> bool:
    return message.is_image and len(message.text.strip()) <= MEANINGFUL_TEXT_LENGTH


class MessageEventExtractor:
    """Turns one source's messages into event candidates."""

    def __init__(
        self,
        telegram_client: TelegramClientProtocol,
        extractor: EventExtractorProtocol,
        candidate_builder: CandidateBuilder,
        image_storage: ImageStorageProtocol | None = None,
        *,
        window_seconds: int = ADJACENT_WINDOW_SECONDS,
        extraction_delay_seconds: float = EXTRACTION_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize extractor.

        Args:
            telegram_client: Client used for media downloads and author lookups
            extractor: Structured extraction service
            candidate_builder: Validates fields and assembles candidates
            image_storage: Image hosting; candidates carry no images without it
            window_seconds: Max distance between trigger and adjacent messages
            extraction_delay_seconds: Pause before each extraction call
            sleep: Sleep function (replaced in tests)
        """
        self.telegram_client = telegram_client
        self.extractor = extractor
        self.candidate_builder = candidate_builder
        self.image_storage = image_storage
        self.window_seconds = window_seconds
        self.extraction_delay_seconds = extraction_delay_seconds
        self._sleep = sleep

    def process_messages(
        self, messages: Sequence[RawMessage], target: ScrapingTarget
    ) -> list[EventCandidate]:
        """Extract candidates from a batch of messages of one source.

        A message consumed as adjacent content of an earlier trigger is not
        used as a trigger again.

        Raises:
            FatalSourceError: When media of the source can no longer be fetched
        """
        ordered = sorted(messages, key=lambda m: (m.date, m.message_id))
        processed_ids: set[int] = set()
        image_cache: dict[int, PreparedImage | None] = {}
        candidates: list[EventCandidate] = []

        stage_start = perf_counter()
        try:
            for message in ordered:
                if message.message_id in processed_ids:
                    continue

                if is_text_trigger(message):
                    candidate, consumed = self._process_text_trigger(
                        message, ordered, target, image_cache
                    )
                elif is_image_trigger(message):
                    candidate, consumed = self._process_image_trigger(
                        message, ordered, target, image_cache
                    )
                else:
                    continue

                processed_ids.update(consumed)
                if candidate is not None:
                    candidates.append(candidate)
        finally:
            PIPELINE_STAGE_DURATION_SECONDS.labels(stage="extract").observe(
                perf_counter() - stage_start
            )

        logger.info(
            "messages_extracted",
            room_id=target.room_id,
            message_count=len(ordered),
            candidate_count=len(candidates),
        )
        return candidates

    def _process_text_trigger(
        self,
        trigger: RawMessage,
        messages: Sequence[RawMessage],
        target: ScrapingTarget,
        image_cache: dict[int, PreparedImage | None],
    ) -> tuple[EventCandidate | None, list[int]]:
        adjacent_images = find_adjacent_images(trigger, messages, self.window_seconds)
        adjacent_texts = find_adjacent_texts(trigger, messages, self.window_seconds)
        consumed = list(
            dict.fromkeys(
                [
                    trigger.message_id,
                    *adjacent_images.message_ids,
                    *adjacent_texts.message_ids,
                ]
            )
        )

        combined_text = "\n\n".join(
            [
                format_message_html(trigger.text, trigger.annotations),
                *adjacent_texts.html_fragments,
            ]
        )
        images = self._prepare_images(adjacent_images.messages, image_cache)

        fields = self._extract(
            trigger, combined_text, [image.data_url for image in images]
        )
        if fields is None:
            return None, consumed

        candidate = self._build(
            fields, trigger, target, combined_text, consumed, images
        )
        return candidate, consumed

    def _process_image_trigger(
        self,
        trigger: RawMessage,
        messages: Sequence[RawMessage],
        target: ScrapingTarget,
        image_cache: dict[int, PreparedImage | None],
    ) -> tuple[EventCandidate | None, list[int]]:
        adjacent_images = find_adjacent_images(trigger, messages, self.window_seconds)
        adjacent_texts = find_adjacent_texts(trigger, messages, self.window_seconds)
        consumed = list(
            dict.fromkeys(
                [
                    trigger.message_id,
                    *adjacent_images.message_ids,
                    *adjacent_texts.message_ids,
                ]
            )
        )

        main_images = self._prepare_images([trigger], image_cache)
        if not main_images:
            logger.info(
                "image_trigger_skipped",
                room_id=target.room_id,
                message_id=trigger.message_id,
                reason="image_unavailable",
            )
            return None, consumed

        combined_text = adjacent_texts.combined()
        fields = self._extract(trigger, combined_text, [main_images[0].data_url])
        if fields is None:
            return None, consumed

        others = [m for m in adjacent_images.messages if m.message_id != trigger.message_id]
        images = main_images + self._prepare_images(others, image_cache)
        description_original = combined_text or (fields.description or "")
        candidate = self._build(
            fields, trigger, target, description_original, consumed, images
        )
        return candidate, consumed

    def _extract(
        self, trigger: RawMessage, text: str, image_data_urls: list[str]
    ) -> EventFields | None:
        if self.extraction_delay_seconds > 0:
            self._sleep(self.extraction_delay_seconds)
        try:
            return self.extractor.extract_event_fields(
                text, trigger.date, image_data_urls
            )
        except LLMAPIError as exc:
            logger.warning(
                "extraction_failed",
                room_id=trigger.room_id,
                message_id=trigger.message_id,
                error=str(exc),
            )
            return None

    def _build(
        self,
        fields: EventFields,
        trigger: RawMessage,
        target: ScrapingTarget,
        description_original: str,
        consumed: list[int],
        images: list[PreparedImage],
    ) -> EventCandidate | None:
        author = self.telegram_client.get_author_info(trigger)
        candidate = self.candidate_builder.build(
            fields,
            BuildContext(
                trigger=trigger,
                target=target,
                description_original=description_original,
                author=author,
                consumed_message_ids=consumed,
            ),
        )
        if candidate is None:
            return None

        image_urls = self._upload_images(images, candidate.slug)
        if image_urls:
            candidate = candidate.model_copy(update={"image_urls": image_urls})
        return candidate

    def _prepare_images(
        self,
        messages: Sequence[RawMessage],
        image_cache: dict[int, PreparedImage | None],
    ) -> list[PreparedImage]:
        """Download, resize and fingerprint images, each message at most once."""
        prepared: list[PreparedImage] = []
        for message in messages:
            if message.message_id not in image_cache:
                image_cache[message.message_id] = self._prepare_image(message)
            image = image_cache[message.message_id]
            if image is not None:
                prepared.append(image)
        return prepared

    def _prepare_image(self, message: RawMessage) -> PreparedImage | None:
        try:
            raw = self.telegram_client.download_media(message)
        except MediaDownloadError as exc:
            logger.warning(
                "media_download_failed",
                room_id=message.room_id,
                message_id=message.message_id,
                error=str(exc),
            )
            return None
        if not raw:
            return None

        try:
            jpeg_bytes = image_fingerprint.resize_cover_image(raw)
            token = image_fingerprint.fingerprint(jpeg_bytes)
        except (ValidationError, FingerprintError) as exc:
            logger.warning(
                "image_preparation_failed",
                room_id=message.room_id,
                message_id=message.message_id,
                error=str(exc),
            )
            return None
        return PreparedImage(
            message_id=message.message_id, jpeg_bytes=jpeg_bytes, token=token
        )

    def _upload_images(self, images: list[PreparedImage], slug: str) -> list[str]:
        if self.image_storage is None:
            return []

        urls: list[str] = []
        uploaded_tokens: list[str] = []
        for image in images:
            if any(
                image_fingerprint.is_same_photo(image.token, uploaded)
                for uploaded in uploaded_tokens
            ):
                continue
            try:
                urls.append(
                    self.image_storage.upload_image(image.jpeg_bytes, slug, image.token)
                )
            except ImageStorageError as exc:
                logger.warning(
                    "image_upload_failed",
                    slug=slug,
                    message_id=image.message_id,
                    error=str(exc),
                )
                continue
            uploaded_tokens.append(image.token)
        return urls


__all__ = [
    "MessageEventExtractor",
    "PreparedImage",
    "is_image_trigger",
    "is_text_trigger",
]
