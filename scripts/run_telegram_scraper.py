from __future__ import annotations

"""Entry point for one scraping run over every configured Telegram source."""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from scripts import pipeline_runtime
from src.config.logging_config import get_logger
from src.config.settings import get_settings
from src.domain.exceptions import EventHarvesterError
from src.observability.metrics import ensure_metrics_exporter
from src.workers.source_pool import SourceWorkerPool

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Scrape events from all configured Telegram sources"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Concurrent sources (default: worker_pool_size from config)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port while running",
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
    if args.metrics_port is not None:
        ensure_metrics_exporter(args.metrics_port)

    repository = pipeline_runtime.create_repository(settings)
    pipeline_runtime.seed_scraping_targets(settings, repository)
    targets = repository.get_scraping_targets()
    if not targets:
        logger.warning("no_scraping_targets")
        return 0

    try:
        telegram_client = pipeline_runtime.create_telegram_client(settings)
    except EventHarvesterError as exc:
        logger.error("telegram_client_unavailable", error=str(exc))
        return 1

    with telegram_client:
        process_target = pipeline_runtime.build_target_processor(
            settings, repository=repository, telegram_client=telegram_client
        )
        pool = SourceWorkerPool(
            process_target, max_workers=args.workers or settings.worker_pool_size
        )
        result = pool.run(targets)

    for fatal_error in result.fatal_errors:
        logger.error("scraper_fatal_source", error=fatal_error)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
