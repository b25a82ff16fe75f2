"""Ingest Telegram messages use case.

Runs the pipeline for one scraping target: resolve the room, fetch the
messages after the checkpoint cursor, extract candidates, merge them into
the event store and move the checkpoint forward.
"""

from collections.abc import Callable
from datetime import datetime
from time import perf_counter
from typing import Any

from src.config.logging_config import get_logger
from src.domain.correlation_constants import (
    ALL_TOPICS_MARKER,
    FETCH_BATCH_LIMIT,
    RESOLVE_NAME_PREFIX,
)
from src.domain.deduplication_constants import IMAGE_HASH_DISTANCE_THRESHOLD
from src.domain.exceptions import (
    EventHarvesterError,
    FatalSourceError,
    TelegramAPIError,
)
from src.domain.models import RawMessage, ScrapingTarget, SourceEntity, SourceRunResult
from src.domain.protocols import RepositoryProtocol, TelegramClientProtocol
from src.observability.metrics import (
    MESSAGES_PROCESSED_TOTAL,
    PIPELINE_STAGE_DURATION_SECONDS,
    SOURCE_RUNS_TOTAL,
)
from src.services import deduplicator
from src.services.candidate_builder import utc_now
from src.use_cases.deduplicate_events import merge_candidate_into_store
from src.use_cases.extract_events import MessageEventExtractor

logger = get_logger(__name__)


def resolve_room_id(
    telegram_client: TelegramClientProtocol,
    repository: RepositoryProtocol,
    target: ScrapingTarget,
) -> ScrapingTarget:
    """Replace a ``resolveName:<title>`` room id with the dialog's chat id.

    The resolved id is written back so later runs skip the lookup.

    Raises:
        TelegramAPIError: When no dialog carries that title
    """
    if not target.room_id.startswith(RESOLVE_NAME_PREFIX):
        return target

    dialog_name = target.room_id[len(RESOLVE_NAME_PREFIX) :].strip()
    room_id = telegram_client.find_dialog_id_by_name(dialog_name)
    if room_id is None:
        raise TelegramAPIError(f"No dialog named {dialog_name!r}")

    repository.update_scraping_target(target.room_id, {"room_id": room_id})
    logger.info("room_id_resolved", dialog_name=dialog_name, room_id=room_id)
    return target.model_copy(update={"room_id": room_id})


def validate_topics(target: ScrapingTarget, entity: SourceEntity) -> None:
    """Check that forums list topics and plain chats do not.

    Raises:
        FatalSourceError: When the configuration does not match the chat
    """
    if entity.is_forum and not target.topic_ids:
        raise FatalSourceError(target.room_id, "forum has no topic ids configured")
    if not entity.is_forum and target.topic_ids:
        raise FatalSourceError(target.room_id, "topic ids configured for a non-forum")


def fetch_new_messages(
    telegram_client: TelegramClientProtocol,
    target: ScrapingTarget,
    limit: int = FETCH_BATCH_LIMIT,
) -> list[RawMessage]:
    """Fetch messages after the checkpoint, per topic for forums.

    Topic ``-1`` reads all topics at once. Messages fetched through more
    than one topic are kept once.
    """
    topics: list[int | None] = list(target.topic_ids) or [None]
    by_id: dict[int, RawMessage] = {}
    for topic in topics:
        topic_id = None if topic == ALL_TOPICS_MARKER else topic
        for message in telegram_client.fetch_messages(
            target.room_id,
            min_id=target.last_message_id,
            limit=limit,
            topic_id=topic_id,
        ):
            by_id.setdefault(message.message_id, message)
    return list(by_id.values())


def _record_failure(
    repository: RepositoryProtocol,
    room_id: str,
    error: str,
    finished_at: datetime,
) -> None:
    try:
        repository.update_scraping_target(
            room_id, {"last_error": error, "last_run_finished_at": finished_at}
        )
    except EventHarvesterError as exc:
        logger.error("checkpoint_update_failed", room_id=room_id, error=str(exc))


def process_scraping_target(
    target: ScrapingTarget,
    *,
    telegram_client: TelegramClientProtocol,
    repository: RepositoryProtocol,
    extractor: MessageEventExtractor,
    fetch_limit: int = FETCH_BATCH_LIMIT,
    image_threshold: int = IMAGE_HASH_DISTANCE_THRESHOLD,
    clock: Callable[[], datetime] = utc_now,
) -> SourceRunResult:
    """Run the whole pipeline for one scraping target.

    1. Resolve ``resolveName:`` room ids
    2. Resolve the chat and validate its topic configuration
    3. Fetch up to ``fetch_limit`` messages after the cursor (per topic)
    4. Extract candidates oldest-first
    5. Merge candidates of this run by slug, tag them with the room id and
       merge them into the store
    6. Advance the checkpoint

    Returns:
        SourceRunResult; non-fatal failures are reported with success False
        and recorded in the target's last_error

    Raises:
        FatalSourceError: When the source cannot be processed at all; the
            error is recorded on the target before it is raised

    Example:
        >>> result = process_scraping_target(target, telegram_client=client,
        ...     repository=repo, extractor=extractor)
        >>> result.events_saved
        2
    """
    room_id = target.room_id
    stage_start = perf_counter()
    logger.info("source_run_started", room_id=room_id, cursor=target.last_message_id)
    try:
        target = resolve_room_id(telegram_client, repository, target)
        room_id = target.room_id

        entity = telegram_client.get_source_entity(room_id)
        validate_topics(target, entity)

        messages = fetch_new_messages(telegram_client, target, fetch_limit)
        MESSAGES_PROCESSED_TOTAL.labels(room_id=room_id).inc(len(messages))
        if not messages:
            repository.update_scraping_target(
                room_id,
                {
                    "name": entity.name,
                    "last_run_finished_at": clock(),
                    "last_error": None,
                },
            )
            SOURCE_RUNS_TOTAL.labels(status="empty").inc()
            logger.info("source_run_finished", room_id=room_id, messages=0, events=0)
            return SourceRunResult(room_id=room_id, success=True)

        candidates = extractor.process_messages(messages, target)
        merged = deduplicator.merge_batch_by_slug(candidates)

        events_saved = 0
        for candidate in merged:
            room_ids = list(dict.fromkeys([*candidate.telegram_room_ids, room_id]))
            tagged = candidate.model_copy(update={"telegram_room_ids": room_ids})
            if merge_candidate_into_store(repository, tagged, image_threshold):
                events_saved += 1

        newest = max(messages, key=lambda m: m.message_id)
        updates: dict[str, Any] = {
            "name": entity.name,
            "messages_consumed": target.messages_consumed + len(messages),
            "last_message_id": newest.message_id,
            "last_message_time": newest.date,
            "scraped_events": target.scraped_events + events_saved,
            "last_error": None,
            "last_run_finished_at": clock(),
        }
        repository.update_scraping_target(room_id, updates)
    except FatalSourceError as exc:
        _record_failure(repository, room_id, str(exc), clock())
        SOURCE_RUNS_TOTAL.labels(status="fatal").inc()
        logger.error("source_run_fatal", room_id=room_id, error=str(exc))
        raise
    except EventHarvesterError as exc:
        _record_failure(repository, room_id, str(exc), clock())
        SOURCE_RUNS_TOTAL.labels(status="failed").inc()
        logger.error("source_run_failed", room_id=room_id, error=str(exc))
        return SourceRunResult(room_id=room_id, success=False, error=str(exc))
    finally:
        telegram_client.forget_room(room_id)
        PIPELINE_STAGE_DURATION_SECONDS.labels(stage="source_run").observe(
            perf_counter() - stage_start
        )

    SOURCE_RUNS_TOTAL.labels(status="success").inc()
    logger.info(
        "source_run_finished",
        room_id=room_id,
        messages=len(messages),
        candidates=len(candidates),
        events=events_saved,
        cursor=newest.message_id,
    )
    return SourceRunResult(
        room_id=room_id,
        success=True,
        messages_consumed=len(messages),
        events_saved=events_saved,
    )
