from __future__ import annotations

"""Common runtime helpers for pipeline scripts."""

from functools import partial

from src.adapters.geocoder import GoogleGeocoder
from src.adapters.image_storage import CloudinaryImageStorage
from src.adapters.llm_client import LLMClient
from src.adapters.sqlite_repository import SQLiteRepository
from src.adapters.telegram_client import TelegramClient
from src.config.logging_config import get_logger, setup_logging
from src.config.settings import Settings
from src.domain.exceptions import EventHarvesterError
from src.domain.protocols import RepositoryProtocol, TelegramClientProtocol
from src.services.candidate_builder import CandidateBuilder
from src.use_cases.extract_events import MessageEventExtractor
from src.use_cases.ingest_telegram_messages import process_scraping_target
from src.workers.source_pool import ProcessTarget

logger = get_logger(__name__)


def initialize_logging(settings: Settings, *, json_logs: bool = False) -> None:
    """Initialize structlog-based logging for scripts."""

    setup_logging(log_level=settings.log_level, json_logs=json_logs)
    logger.info("logging_initialized", level=settings.log_level, json_logs=json_logs)


def create_repository(settings: Settings) -> SQLiteRepository:
    return SQLiteRepository(settings.db_path)


def create_telegram_client(settings: Settings) -> TelegramClient:
    """Build the Telegram client from .env credentials.

    Raises:
        EventHarvesterError: When the API id or hash is missing
    """
    if not settings.telegram_configured or settings.telegram_api_hash is None:
        raise EventHarvesterError("TELEGRAM_API_ID and TELEGRAM_API_HASH must be set")
    session = (
        settings.telegram_session.get_secret_value()
        if settings.telegram_session
        else None
    )
    return TelegramClient(
        api_id=int(settings.telegram_api_id or 0),
        api_hash=settings.telegram_api_hash.get_secret_value(),
        session_string=session,
        session_name=settings.telegram_session_path,
    )


def create_llm_client(settings: Settings) -> LLMClient:
    return LLMClient(
        api_key=settings.openai_api_key.get_secret_value(),
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        timeout=settings.llm_timeout_seconds,
        prompt_file=settings.prompt_file,
        max_retries=settings.llm_max_retries,
    )


def create_geocoder(
    settings: Settings, repository: RepositoryProtocol
) -> GoogleGeocoder:
    api_key = (
        settings.google_maps_api_key.get_secret_value()
        if settings.google_maps_api_key
        else None
    )
    return GoogleGeocoder(api_key, repository)


def create_image_storage(settings: Settings) -> CloudinaryImageStorage | None:
    """Cloudinary storage, or None (with a warning) when not configured."""
    if not settings.image_storage_configured:
        logger.warning("image_storage_not_configured")
        return None
    assert settings.cloudinary_api_key is not None
    assert settings.cloudinary_api_secret is not None
    return CloudinaryImageStorage(
        cloud_name=settings.cloudinary_cloud_name or "",
        api_key=settings.cloudinary_api_key.get_secret_value(),
        api_secret=settings.cloudinary_api_secret.get_secret_value(),
        upload_preset=settings.cloudinary_upload_preset,
    )


def seed_scraping_targets(settings: Settings, repository: RepositoryProtocol) -> int:
    """Store configured targets that the database does not know yet."""
    known = {target.room_id for target in repository.get_scraping_targets()}
    added = 0
    for target in settings.scraping_targets:
        if target.room_id in known:
            continue
        repository.save_scraping_target(target)
        added += 1
    if added:
        logger.info("scraping_targets_seeded", count=added)
    return added


def build_target_processor(
    settings: Settings,
    *,
    repository: RepositoryProtocol,
    telegram_client: TelegramClientProtocol,
) -> ProcessTarget:
    """Wire the per-source pipeline for the worker pool."""

    extractor = MessageEventExtractor(
        telegram_client=telegram_client,
        extractor=create_llm_client(settings),
        candidate_builder=CandidateBuilder(
            geocoder=create_geocoder(settings, repository)
        ),
        image_storage=create_image_storage(settings),
        window_seconds=settings.correlation_window_seconds,
        extraction_delay_seconds=settings.extraction_delay_seconds,
    )
    return partial(
        process_scraping_target,
        telegram_client=telegram_client,
        repository=repository,
        extractor=extractor,
        fetch_limit=settings.fetch_limit,
        image_threshold=settings.image_hash_threshold,
    )


__all__ = [
    "build_target_processor",
    "create_geocoder",
    "create_image_storage",
    "create_llm_client",
    "create_repository",
    "create_telegram_client",
    "initialize_logging",
    "seed_scraping_targets",
]
