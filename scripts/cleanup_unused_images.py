from __future__ import annotations

"""Entry point for deleting stored images that no event references."""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import pipeline_runtime
from src.config.logging_config import get_logger
from src.config.settings import get_settings
from src.domain.exceptions import ImageStorageError
from src.use_cases.cleanup_images import cleanup_unused_images_use_case

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete unreferenced event images")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List unreferenced images without deleting them",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    pipeline_runtime.initialize_logging(settings, json_logs=args.json_logs)

    storage = pipeline_runtime.create_image_storage(settings)
    if storage is None:
        return 1

    repository = pipeline_runtime.create_repository(settings)
    try:
        result = cleanup_unused_images_use_case(
            storage, repository, dry_run=args.dry_run
        )
    except ImageStorageError as exc:
        logger.error("image_cleanup_failed", error=str(exc))
        return 1

    logger.info(
        "cleanup_unused_images_finished",
        stored_images=result.stored_images,
        unreferenced_images=result.unreferenced_images,
        deleted_images=result.deleted_images,
        freed_bytes=result.freed_bytes,
        dry_run=args.dry_run,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
