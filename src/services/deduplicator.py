"""Duplicate detection and merge rules for events.

Rules:
1. Two crawls of the same website source never merge
2. Any recognized website source beats a messaging source; between two
   websites the higher priority source survives, with no field merge
3. Otherwise the longer description survives and absorbs the loser's fields

Detection only compares events that share an exact start timestamp:
- image_hash: fingerprint tokens embedded in image URLs within distance 5
- text_similarity: trigram similarity of descriptions >= 0.5
"""

import re
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from itertools import combinations
from typing import Final, TypeVar

from src.domain.deduplication_constants import (
    DESCRIPTION_SIMILARITY_THRESHOLD,
    IMAGE_HASH_DISTANCE_THRESHOLD,
    WEBSITE_SCRAPE_SOURCES,
    WEBSITE_SOURCE_PRIORITY,
)
from src.domain.models import (
    DuplicatePair,
    DuplicateStrategy,
    EventCandidate,
    EventRecord,
    PersistedEvent,
)
from src.services.image_fingerprint import distance, is_same_photo, token_from_url

RecordT = TypeVar("RecordT", bound=EventRecord)

_WORD: Final[re.Pattern[str]] = re.compile(r"[^\W_]+")

# Scalar fields copied from the loser when empty on the survivor
ABSORBED_FIELDS: Final[tuple[str, ...]] = (
    "description",
    "description_original",
    "summary",
    "end_at",
    "latitude",
    "longitude",
    "price",
    "contact",
    "host",
    "host_link",
    "source_url",
    "message_sender_id",
)


class MergeAction(str, Enum):
    """What to do with a duplicate pair."""

    SKIP = "skip"
    DELETE_LOSER = "delete_loser"
    ABSORB = "absorb"


@dataclass(frozen=True, slots=True)
class MergeDecision:
    """Outcome of the merge policy for one pair."""

    action: MergeAction
    reason: str
    survivor: EventRecord | None = None
    loser: EventRecord | None = None


def _trigrams(text: str) -> set[str]:
    grams: set[str] = set()
    for word in _WORD.findall(text.lower()):
        padded = f"  {word} "
        grams.update(padded[i : i + 3] for i in range(len(padded) - 2))
    return grams


def trigram_similarity(text_a: str | None, text_b: str | None) -> float:
    """Jaccard index of the padded word trigrams of two texts.

    Words are lowercased alphanumeric runs padded with two leading spaces
    and one trailing space. Two texts without any words score 0.0.

    Example:
        >>> trigram_similarity("word", "word")
        1.0
        >>> trigram_similarity("word", "two words")
        0.3636...
    """
    grams_a = _trigrams(text_a or "")
    grams_b = _trigrams(text_b or "")
    union = grams_a | grams_b
    if not union:
        return 0.0
    return len(grams_a & grams_b) / len(union)


def is_website_source(source: str) -> bool:
    return source in WEBSITE_SCRAPE_SOURCES


def website_rank(source: str) -> int:
    """Trust rank of a source; higher wins.

    Messaging sources rank -1, unlisted website sources 0 and listed
    website sources above that, the first entry of the priority list
    ranking highest.
    """
    if not is_website_source(source):
        return -1
    if source not in WEBSITE_SOURCE_PRIORITY:
        return 0
    return len(WEBSITE_SOURCE_PRIORITY) - WEBSITE_SOURCE_PRIORITY.index(source)


def decide_merge(event_a: EventRecord, event_b: EventRecord) -> MergeDecision:
    """Apply the merge policy to a duplicate pair.

    Args:
        event_a: First event (kept on a description length tie)
        event_b: Second event

    Returns:
        MergeDecision naming survivor and loser, or a skip

    Example:
        >>> decision = decide_merge(telegram_event, seijetzt_event)
        >>> decision.action, decision.survivor is seijetzt_event
        (<MergeAction.DELETE_LOSER: 'delete_loser'>, True)
    """
    if event_a.source == event_b.source and is_website_source(event_a.source):
        return MergeDecision(MergeAction.SKIP, reason="same_website_source")

    rank_a = website_rank(event_a.source)
    rank_b = website_rank(event_b.source)
    if rank_a >= 0 or rank_b >= 0:
        if rank_a > rank_b:
            return MergeDecision(
                MergeAction.DELETE_LOSER, "website_priority", event_a, event_b
            )
        if rank_b > rank_a:
            return MergeDecision(
                MergeAction.DELETE_LOSER, "website_priority", event_b, event_a
            )
        return MergeDecision(MergeAction.SKIP, reason="equal_website_priority")

    if len(event_a.description or "") >= len(event_b.description or ""):
        return MergeDecision(MergeAction.ABSORB, "longer_description", event_a, event_b)
    return MergeDecision(MergeAction.ABSORB, "longer_description", event_b, event_a)


def _union(first: Iterable[str], second: Iterable[str]) -> list[str]:
    return list(dict.fromkeys([*first, *second]))


def _address_length(lines: Sequence[str]) -> int:
    return len(", ".join(lines))


def merge_image_urls(
    survivor_urls: Sequence[str],
    loser_urls: Sequence[str],
    threshold: int = IMAGE_HASH_DISTANCE_THRESHOLD,
) -> list[str]:
    """Append the loser's images that are not near-duplicates of the survivor's.

    URLs without a fingerprint token are appended unless already present.
    """
    merged = list(survivor_urls)
    tokens = [token for url in merged if (token := token_from_url(url))]
    for url in loser_urls:
        if url in merged:
            continue
        token = token_from_url(url)
        if token is None:
            merged.append(url)
            continue
        if not any(is_same_photo(token, existing, threshold) for existing in tokens):
            merged.append(url)
            tokens.append(token)
    return merged


def absorb_fields(
    survivor: RecordT,
    loser: EventRecord,
    image_threshold: int = IMAGE_HASH_DISTANCE_THRESHOLD,
) -> RecordT:
    """Fold the loser's data into the survivor.

    Empty scalar fields are filled from the loser, tags and room ids are
    unioned, images are unioned skipping near-duplicate photos and the
    longer address is kept. Identity fields (name, slug, start) never change.

    Returns:
        Updated copy of the survivor
    """
    updates: dict[str, object] = {}
    for field_name in ABSORBED_FIELDS:
        if not getattr(survivor, field_name) and getattr(loser, field_name):
            updates[field_name] = getattr(loser, field_name)

    updates["tags"] = _union(survivor.tags, loser.tags)
    updates["telegram_room_ids"] = _union(
        survivor.telegram_room_ids, loser.telegram_room_ids
    )
    updates["image_urls"] = merge_image_urls(
        survivor.image_urls, loser.image_urls, image_threshold
    )
    if _address_length(loser.address) > _address_length(survivor.address):
        updates["address"] = list(loser.address)

    return survivor.model_copy(update=updates)


def _group_by_start(events: Iterable[PersistedEvent]) -> dict[datetime, list[PersistedEvent]]:
    groups: dict[datetime, list[PersistedEvent]] = defaultdict(list)
    for event in events:
        groups[event.start_at].append(event)
    for group in groups.values():
        group.sort(key=lambda event: event.id)
    return groups


def find_image_hash_duplicates(
    events: Iterable[PersistedEvent],
    threshold: int = IMAGE_HASH_DISTANCE_THRESHOLD,
) -> list[DuplicatePair]:
    """Flag event pairs sharing a start time and a near-identical image.

    The pair score is the smallest Hamming distance found between any of
    their image fingerprints. Results are ordered by ascending distance.
    """
    pairs: list[DuplicatePair] = []
    for group in _group_by_start(events).values():
        for event_a, event_b in combinations(group, 2):
            tokens_a = [t for url in event_a.image_urls if (t := token_from_url(url))]
            tokens_b = [t for url in event_b.image_urls if (t := token_from_url(url))]
            distances = [distance(ta, tb) for ta in tokens_a for tb in tokens_b]
            if distances and min(distances) <= threshold:
                pairs.append(
                    DuplicatePair(
                        id_a=event_a.id,
                        id_b=event_b.id,
                        strategy=DuplicateStrategy.IMAGE_HASH,
                        score=float(min(distances)),
                    )
                )
    pairs.sort(key=lambda pair: (pair.score, pair.id_a, pair.id_b))
    return pairs


def find_text_similarity_duplicates(
    events: Iterable[PersistedEvent],
    threshold: float = DESCRIPTION_SIMILARITY_THRESHOLD,
) -> list[DuplicatePair]:
    """Flag event pairs sharing a start time with similar descriptions.

    Pairs are (lower id, higher id), ranked by descending similarity.
    """
    pairs: list[DuplicatePair] = []
    for group in _group_by_start(events).values():
        for event_a, event_b in combinations(group, 2):
            score = trigram_similarity(event_a.description, event_b.description)
            if score >= threshold:
                pairs.append(
                    DuplicatePair(
                        id_a=event_a.id,
                        id_b=event_b.id,
                        strategy=DuplicateStrategy.TEXT_SIMILARITY,
                        score=score,
                    )
                )
    pairs.sort(key=lambda pair: (-pair.score, pair.id_a, pair.id_b))
    return pairs


def merge_batch_by_slug(candidates: Iterable[EventCandidate]) -> list[EventCandidate]:
    """Collapse candidates of one run that share a slug.

    The first candidate per slug is kept; it takes the longest description
    and the union of images, tags, room ids and consumed message ids.
    """
    merged: dict[str, EventCandidate] = {}
    for candidate in candidates:
        existing = merged.get(candidate.slug)
        if existing is None:
            merged[candidate.slug] = candidate
            continue

        description = existing.description
        if len(candidate.description or "") > len(existing.description or ""):
            description = candidate.description

        merged[candidate.slug] = existing.model_copy(
            update={
                "description": description,
                "image_urls": _union(existing.image_urls, candidate.image_urls),
                "tags": _union(existing.tags, candidate.tags),
                "telegram_room_ids": _union(
                    existing.telegram_room_ids, candidate.telegram_room_ids
                ),
                "consumed_message_ids": list(
                    dict.fromkeys(
                        [*existing.consumed_message_ids, *candidate.consumed_message_ids]
                    )
                ),
            }
        )
    return list(merged.values())


__all__ = [
    "MergeAction",
    "MergeDecision",
    "absorb_fields",
    "decide_merge",
    "find_image_hash_duplicates",
    "find_text_similarity_duplicates",
    "merge_batch_by_slug",
    "merge_image_urls",
    "trigram_similarity",
    "website_rank",
]
