"""Prometheus metrics for the harvesting pipeline.

Collectors are module-level singletons registered in the default registry.
The HTTP exporter is never started on import; entry points call
``ensure_metrics_exporter`` when ``--metrics-port`` is given.
"""

from __future__ import annotations

import threading
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from src.config.logging_config import get_logger

logger = get_logger(__name__)

MESSAGES_PROCESSED_TOTAL: Final[Counter] = Counter(
    "harvester_messages_processed_total",
    "Messages fetched and examined per source",
    labelnames=("room_id",),
)

CANDIDATES_TOTAL: Final[Counter] = Counter(
    "harvester_candidates_total",
    "Event candidates by build outcome",
    labelnames=("outcome",),
)

SOURCE_RUNS_TOTAL: Final[Counter] = Counter(
    "harvester_source_runs_total",
    "Source runs by final status",
    labelnames=("status",),
)

MERGES_TOTAL: Final[Counter] = Counter(
    "harvester_merges_total",
    "Duplicate merges by detection strategy and action",
    labelnames=("strategy", "action"),
)

PIPELINE_STAGE_DURATION_SECONDS: Final[Histogram] = Histogram(
    "harvester_stage_duration_seconds",
    "Duration of pipeline stages in seconds",
    labelnames=("stage",),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
DEFAULT_METRICS_PORT: Final[int] = 9000


def ensure_metrics_exporter(port: int = DEFAULT_METRICS_PORT) -> None:
    """Start the Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        try:
            start_http_server(port)
        except OSError as exc:
            logger.error("metrics_exporter_start_failed", port=port, error=str(exc))
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=port)


__all__ = [
    "CANDIDATES_TOTAL",
    "MERGES_TOTAL",
    "MESSAGES_PROCESSED_TOTAL",
    "PIPELINE_STAGE_DURATION_SECONDS",
    "SOURCE_RUNS_TOTAL",
    "ensure_metrics_exporter",
]
