"""Constants steering trigger detection and adjacent-message correlation."""

from typing import Final

ADJACENT_WINDOW_SECONDS: Final[int] = 300
"""Maximum distance in seconds between a trigger and a correlated message.

Business rule: announcements are often split into a text post and one or
more flyers sent within a few minutes by the same author.
"""

MEANINGFUL_TEXT_LENGTH: Final[int] = 30
"""Text longer than this many characters counts as a standalone message.

Used twice: a text message longer than this is a text trigger (shorter
captions on images make an image trigger), and a same-author message with
more text than this between a trigger and an image means the image belongs
to that other announcement.
"""

ADJACENT_CAPTION_MIN_LENGTH: Final[int] = 10
"""Media messages contribute their caption as adjacent text above this length."""

FETCH_BATCH_LIMIT: Final[int] = 50
"""Messages requested per source (and per forum topic) in one run."""

ALL_TOPICS_MARKER: Final[int] = -1
"""Topic id that opts a forum into fetching across all of its topics."""

RESOLVE_NAME_PREFIX: Final[str] = "resolveName:"
"""Room id prefix asking the pipeline to look the chat up by dialog name."""

EXTRACTION_DELAY_SECONDS: Final[float] = 1.0
"""Pause before each extraction call to stay under the provider rate limit."""

DEFAULT_WORKER_POOL_SIZE: Final[int] = 3
"""Sources processed concurrently by the worker pool."""
