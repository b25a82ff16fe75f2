"""Deduplicate events use case.

Online: each new candidate is merged into the store against the event that
shares its slug. Offline: the whole store is scanned for image hash and
description similarity duplicates and every pair is resolved with the same
merge policy.
"""

from time import perf_counter
from typing import cast

from src.config.logging_config import get_logger
from src.domain.deduplication_constants import (
    DESCRIPTION_SIMILARITY_THRESHOLD,
    IMAGE_HASH_DISTANCE_THRESHOLD,
)
from src.domain.exceptions import MergeConflictError
from src.domain.models import (
    DeduplicationResult,
    DuplicatePair,
    DuplicateStrategy,
    EventCandidate,
    PersistedEvent,
)
from src.domain.protocols import RepositoryProtocol
from src.observability.metrics import MERGES_TOTAL, PIPELINE_STAGE_DURATION_SECONDS
from src.observability.tracing import correlation_scope
from src.services import deduplicator
from src.services.deduplicator import MergeAction

logger = get_logger(__name__)


def merge_candidate_into_store(
    repository: RepositoryProtocol,
    candidate: EventCandidate,
    image_threshold: int = IMAGE_HASH_DISTANCE_THRESHOLD,
) -> PersistedEvent | None:
    """Persist a candidate, merging it with a stored event of the same slug.

    Returns:
        The stored event, or None when a stored website event wins and the
        candidate is dropped
    """
    existing = repository.get_event_by_slug(candidate.slug)
    if existing is None:
        return repository.upsert_event(candidate)

    decision = deduplicator.decide_merge(existing, candidate)
    MERGES_TOTAL.labels(
        strategy=DuplicateStrategy.SLUG.value, action=decision.action.value
    ).inc()
    logger.info(
        "candidate_slug_match",
        slug=candidate.slug,
        event_id=existing.id,
        action=decision.action.value,
        reason=decision.reason,
    )

    if decision.action == MergeAction.SKIP:
        return repository.upsert_event(candidate)

    if decision.action == MergeAction.DELETE_LOSER:
        if decision.survivor is existing:
            return None
        return repository.upsert_event(candidate)

    if decision.survivor is existing:
        merged = deduplicator.absorb_fields(existing, candidate, image_threshold)
        try:
            return repository.update_event(merged)
        except MergeConflictError as exc:
            logger.warning("merge_conflict", slug=candidate.slug, error=str(exc))
            return repository.upsert_event(candidate)

    merged_candidate = deduplicator.absorb_fields(candidate, existing, image_threshold)
    return repository.upsert_event(merged_candidate)


def _unique_pairs(pairs: list[DuplicatePair]) -> list[DuplicatePair]:
    seen: set[tuple[int, int]] = set()
    unique: list[DuplicatePair] = []
    for pair in pairs:
        key = (min(pair.id_a, pair.id_b), max(pair.id_a, pair.id_b))
        if key in seen:
            continue
        seen.add(key)
        unique.append(pair)
    return unique


def _load_pair(
    repository: RepositoryProtocol, pair: DuplicatePair, removed_ids: set[int]
) -> tuple[PersistedEvent, PersistedEvent]:
    loaded: list[PersistedEvent] = []
    for event_id in (pair.id_a, pair.id_b):
        event = None if event_id in removed_ids else repository.get_event(event_id)
        if event is None:
            raise MergeConflictError(event_id)
        loaded.append(event)
    return loaded[0], loaded[1]


def deduplicate_events_use_case(
    repository: RepositoryProtocol,
    image_threshold: int = IMAGE_HASH_DISTANCE_THRESHOLD,
    text_threshold: float = DESCRIPTION_SIMILARITY_THRESHOLD,
    *,
    dry_run: bool = False,
    correlation_id: str | None = None,
) -> DeduplicationResult:
    """Find and resolve duplicate events across the whole store.

    1. Collect image hash pairs, then description similarity pairs
    2. Re-read both events of each pair; a vanished event is a conflict
    3. Apply the merge policy: skip, delete the loser, or absorb the
       loser's fields into the survivor and delete the loser

    Args:
        repository: Event store
        image_threshold: Max fingerprint distance for the same photo
        text_threshold: Min description similarity
        dry_run: Report decisions without writing

    Returns:
        DeduplicationResult with counts

    Example:
        >>> result = deduplicate_events_use_case(repo, dry_run=True)
        >>> result.pairs_found, result.deleted_events
        (3, 2)
    """
    with correlation_scope(correlation_id) as bound_correlation_id:
        stage_start = perf_counter()
        result: DeduplicationResult | None = None
        try:
            events = repository.list_events()
            pairs = _unique_pairs(
                deduplicator.find_image_hash_duplicates(events, image_threshold)
                + deduplicator.find_text_similarity_duplicates(events, text_threshold)
            )
            logger.info(
                "deduplication_started",
                correlation_id=bound_correlation_id,
                event_count=len(events),
                pair_count=len(pairs),
                dry_run=dry_run,
            )

            merged_events = 0
            deleted_events = 0
            skipped_pairs = 0
            conflicts = 0
            removed_ids: set[int] = set()

            for pair in pairs:
                try:
                    event_a, event_b = _load_pair(repository, pair, removed_ids)
                except MergeConflictError as exc:
                    conflicts += 1
                    logger.warning(
                        "merge_conflict",
                        id_a=pair.id_a,
                        id_b=pair.id_b,
                        error=str(exc),
                    )
                    continue

                decision = deduplicator.decide_merge(event_a, event_b)
                MERGES_TOTAL.labels(
                    strategy=pair.strategy.value, action=decision.action.value
                ).inc()
                if decision.action == MergeAction.SKIP:
                    skipped_pairs += 1
                    logger.info(
                        "duplicate_pair_skipped",
                        id_a=pair.id_a,
                        id_b=pair.id_b,
                        reason=decision.reason,
                    )
                    continue

                survivor = cast(PersistedEvent, decision.survivor)
                loser = cast(PersistedEvent, decision.loser)
                try:
                    if decision.action == MergeAction.ABSORB:
                        merged = deduplicator.absorb_fields(
                            survivor, loser, image_threshold
                        )
                        if not dry_run:
                            repository.update_event(merged)
                        merged_events += 1
                    if not dry_run:
                        repository.delete_event(loser.id)
                except MergeConflictError as exc:
                    conflicts += 1
                    logger.warning(
                        "merge_conflict",
                        id_a=pair.id_a,
                        id_b=pair.id_b,
                        error=str(exc),
                    )
                    continue

                removed_ids.add(loser.id)
                deleted_events += 1
                logger.info(
                    "duplicate_pair_merged",
                    strategy=pair.strategy.value,
                    score=pair.score,
                    survivor_id=survivor.id,
                    loser_id=loser.id,
                    action=decision.action.value,
                    reason=decision.reason,
                    dry_run=dry_run,
                )

            result = DeduplicationResult(
                pairs_found=len(pairs),
                merged_events=merged_events,
                deleted_events=deleted_events,
                skipped_pairs=skipped_pairs,
                conflicts=conflicts,
            )
            return result
        finally:
            duration = perf_counter() - stage_start
            PIPELINE_STAGE_DURATION_SECONDS.labels(stage="dedup").observe(duration)
            if result is not None:
                logger.info(
                    "deduplication_finished",
                    correlation_id=bound_correlation_id,
                    duration_seconds=duration,
                    pairs_found=result.pairs_found,
                    merged_events=result.merged_events,
                    deleted_events=result.deleted_events,
                    skipped_pairs=result.skipped_pairs,
                    conflicts=result.conflicts,
                )
