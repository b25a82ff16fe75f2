"""Bounded worker pool running the per-source pipeline.

Targets are shuffled into a queue. Each worker pops one target (or exits
when the queue is empty) and processes it; whenever a worker finishes, a
replacement is started while targets remain, so at most ``max_workers``
sources are in flight. A fatal error aborts only its own source.
"""

from __future__ import annotations

import queue
import random
import threading
from collections.abc import Callable, Sequence
from time import perf_counter

from src.config.logging_config import get_logger
from src.domain.correlation_constants import DEFAULT_WORKER_POOL_SIZE
from src.domain.exceptions import FatalSourceError
from src.domain.models import PoolRunResult, ScrapingTarget, SourceRunResult
from src.observability.metrics import PIPELINE_STAGE_DURATION_SECONDS
from src.observability.tracing import correlation_scope

logger = get_logger(__name__)

ProcessTarget = Callable[[ScrapingTarget], SourceRunResult]


class SourceWorkerPool:
    """Processes scraping targets concurrently with a fixed worker bound."""

    def __init__(
        self,
        process_target: ProcessTarget,
        max_workers: int = DEFAULT_WORKER_POOL_SIZE,
        *,
        rng: random.Random | None = None,
    ) -> None:
        if max_workers <= 0:
            msg = "max_workers must be positive"
            raise ValueError(msg)

        self._process_target = process_target
        self._max_workers = max_workers
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._results: list[SourceRunResult] = []
        self._fatal_errors: list[str] = []

    def run(self, targets: Sequence[ScrapingTarget]) -> PoolRunResult:
        """Process every target once and collect the outcomes.

        Returns:
            PoolRunResult; ``exit_code`` is 1 when any source failed fatally
        """
        ordered = list(targets)
        self._rng.shuffle(ordered)
        pending: queue.Queue[ScrapingTarget] = queue.Queue()
        for target in ordered:
            pending.put(target)

        self._results = []
        self._fatal_errors = []
        finished: queue.Queue[str] = queue.Queue()

        with correlation_scope() as run_id:
            logger.info(
                "source_pool_started",
                target_count=len(ordered),
                max_workers=self._max_workers,
            )
            stage_start = perf_counter()

            active = 0
            spawned = 0
            while active < self._max_workers and not pending.empty():
                spawned += 1
                self._spawn(pending, finished, run_id, spawned)
                active += 1

            while active:
                finished.get()
                active -= 1
                if not pending.empty():
                    spawned += 1
                    self._spawn(pending, finished, run_id, spawned)
                    active += 1

            PIPELINE_STAGE_DURATION_SECONDS.labels(stage="pool_run").observe(
                perf_counter() - stage_start
            )
            result = PoolRunResult(
                results=list(self._results), fatal_errors=list(self._fatal_errors)
            )
            logger.info(
                "source_pool_finished",
                sources=len(result.results),
                failed=sum(1 for r in result.results if not r.success),
                fatal=len(result.fatal_errors),
                workers_spawned=spawned,
            )
            return result

    def _spawn(
        self,
        pending: queue.Queue[ScrapingTarget],
        finished: queue.Queue[str],
        run_id: str,
        number: int,
    ) -> None:
        name = f"SourceWorker-{number}"
        thread = threading.Thread(
            target=self._worker,
            args=(pending, finished, run_id),
            name=name,
            daemon=True,
        )
        thread.start()

    def _worker(
        self,
        pending: queue.Queue[ScrapingTarget],
        finished: queue.Queue[str],
        run_id: str,
    ) -> None:
        """Pop one target or exit; always signal completion."""
        try:
            try:
                target = pending.get_nowait()
            except queue.Empty:
                return
            with correlation_scope(run_id):
                self._run_target(target)
        finally:
            finished.put(threading.current_thread().name)

    def _run_target(self, target: ScrapingTarget) -> None:
        try:
            result = self._process_target(target)
        except FatalSourceError as exc:
            logger.error("source_fatal_error", room_id=target.room_id, error=str(exc))
            result = SourceRunResult(
                room_id=target.room_id, success=False, error=str(exc)
            )
            with self._lock:
                self._fatal_errors.append(str(exc))
                self._results.append(result)
            return
        except Exception as exc:
            logger.exception(
                "source_unexpected_error", room_id=target.room_id, error=str(exc)
            )
            result = SourceRunResult(
                room_id=target.room_id, success=False, error=str(exc)
            )

        with self._lock:
            self._results.append(result)


__all__ = ["ProcessTarget", "SourceWorkerPool"]
