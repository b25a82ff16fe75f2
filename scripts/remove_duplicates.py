from __future__ import annotations

"""Entry point for the offline duplicate reconciliation pass."""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import pipeline_runtime
from src.config.logging_config import get_logger
from src.config.settings import get_settings
from src.use_cases.deduplicate_events import deduplicate_events_use_case

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Merge duplicate events")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report merge decisions without changing the store",
    )
    parser.add_argument(
        "--image-threshold",
        type=int,
        default=None,
        help="Max fingerprint distance for the same photo",
    )
    parser.add_argument(
        "--text-threshold",
        type=float,
        default=None,
        help="Min description similarity (0..1)",
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

    image_threshold = (
        args.image_threshold
        if args.image_threshold is not None
        else settings.image_hash_threshold
    )
    text_threshold = (
        args.text_threshold
        if args.text_threshold is not None
        else settings.description_similarity_threshold
    )

    repository = pipeline_runtime.create_repository(settings)
    result = deduplicate_events_use_case(
        repository,
        image_threshold=image_threshold,
        text_threshold=text_threshold,
        dry_run=args.dry_run,
    )
    logger.info(
        "remove_duplicates_finished",
        pairs_found=result.pairs_found,
        merged_events=result.merged_events,
        deleted_events=result.deleted_events,
        skipped_pairs=result.skipped_pairs,
        conflicts=result.conflicts,
        dry_run=args.dry_run,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
