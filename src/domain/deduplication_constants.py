"""Business rules and constants for event deduplication.

All thresholds and source rankings used by the merge engine live here so
that the online slug merge and the offline batch pass agree on them.
"""

from typing import Final

IMAGE_HASH_DISTANCE_THRESHOLD: Final[int] = 5
"""Maximum Hamming distance between two perceptual hashes of the same photo.

Business rule: two flyers whose 64-bit pHash differ in at most 5 bits are
treated as the same picture. Used both to flag duplicate events and to avoid
appending a redundant image to an event during a merge.

Example:
    - hash A: 0xd1c4e0f0f8f0c080, hash B differs in 3 bits → same photo
    - hash C differs in 12 bits → different photo
"""

DESCRIPTION_SIMILARITY_THRESHOLD: Final[float] = 0.5
"""Minimum trigram similarity between two descriptions to flag a duplicate.

Similarity is the Jaccard index over padded word trigrams (0.0-1.0). Only
events sharing the exact same start timestamp are compared, which keeps
false positives low even at a permissive threshold.
"""

SLUG_NAME_MAX_LENGTH: Final[int] = 80
"""Maximum characters of the folded event name embedded in a slug."""

SLUG_TIME_COMPONENT_MIN_HOURS: Final[int] = 12
"""Hours an event must run into a later calendar day to get a time in its slug.

Business rule: a party running from 20:00 to 02:00 is still a one-day
event, while a festival from Friday 10:00 to Sunday 18:00 is keyed with its
start time so that separate editions on one day do not collide.
"""

TELEGRAM_SOURCE: Final[str] = "telegram"
"""Source attribute for events produced by the messaging pipeline."""

WEBSITE_SCRAPE_SOURCES: Final[frozenset[str]] = frozenset(
    {
        "awara",
        "tribehaus",
        "heilnetz",
        "heilnetzowl",
        "seijetzt",
        "ggbrandenburg",
        "kuschelraum",
        "ciglobalcalendar",
        "todotoday",
        "vortexapp",
        "megatix_indonesia",
    }
)
"""Source identifiers of the website scrapers feeding the same event store.

Business rule: a website crawl is the authoritative copy of an event. When
a messaging event duplicates a website event, the website event survives and
is not touched.
"""

WEBSITE_SOURCE_PRIORITY: Final[tuple[str, ...]] = (
    "seijetzt",
    "tribehaus",
    "awara",
    "kuschelraum",
    "heilnetz",
    "heilnetzowl",
    "ggbrandenburg",
)
"""Website sources ordered from most to least trusted.

Business rule: when two different website sources describe the same event,
the one listed first survives. Website sources missing from this list rank
below every listed source but still above messaging sources.
"""
