"""Adjacent-content correlation.

An announcement is frequently split across several messages: a text post,
a flyer and maybe a short follow-up, all sent by the same author within a
few minutes. The correlator gathers those siblings around a trigger message
so that they can be extracted and consumed as one event.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from src.config.logging_config import get_logger
from src.domain.correlation_constants import (
    ADJACENT_CAPTION_MIN_LENGTH,
    ADJACENT_WINDOW_SECONDS,
    MEANINGFUL_TEXT_LENGTH,
)
from src.domain.models import RawMessage
from src.services.formatter import format_message_html

logger = get_logger(__name__)


@dataclass(slots=True)
class AdjacentImages:
    """Image messages that belong to a trigger."""

    messages: list[RawMessage] = field(default_factory=list)

    @property
    def message_ids(self) -> list[int]:
        return [message.message_id for message in self.messages]


@dataclass(slots=True)
class AdjacentTexts:
    """HTML fragments of text messages that belong to a trigger."""

    html_fragments: list[str] = field(default_factory=list)
    message_ids: list[int] = field(default_factory=list)

    def combined(self) -> str:
        return "\n\n".join(self.html_fragments)


def _chronological(messages: Sequence[RawMessage]) -> list[RawMessage]:
    return sorted(messages, key=lambda message: (message.date, message.message_id))


def _within_window(trigger: RawMessage, message: RawMessage, window_seconds: int) -> bool:
    return abs((message.date - trigger.date).total_seconds()) <= window_seconds


def has_meaningful_text_between(
    ordered: Sequence[RawMessage],
    first_index: int,
    second_index: int,
    author_id: str,
) -> bool:
    """Whether the author posted a substantial text strictly between two positions.

    Args:
        ordered: Messages sorted chronologically
        first_index: Position of one endpoint (exclusive)
        second_index: Position of the other endpoint (exclusive)
        author_id: Only messages by this author are considered

    Returns:
        True when some message in between has more than 30 trimmed characters
    """
    low, high = sorted((first_index, second_index))
    for message in ordered[low + 1 : high]:
        if message.author_id != author_id:
            continue
        if len(message.text.strip()) > MEANINGFUL_TEXT_LENGTH:
            return True
    return False


def find_adjacent_images(
    trigger: RawMessage,
    messages: Sequence[RawMessage],
    window_seconds: int = ADJACENT_WINDOW_SECONDS,
) -> AdjacentImages:
    """Collect same-author image messages that belong to ``trigger``.

    An image is rejected when the author posted another meaningful text
    between it and the trigger, since it then illustrates that other post.
    A trigger that is itself an image is included in the result.
    """
    result = AdjacentImages()
    author_id = trigger.author_id
    if not author_id:
        return result

    ordered = _chronological(messages)
    positions = {message.message_id: index for index, message in enumerate(ordered)}
    trigger_index = positions.get(trigger.message_id)
    if trigger_index is None:
        return result

    for message in messages:
        if message.author_id != author_id or not message.is_image:
            continue
        if not _within_window(trigger, message, window_seconds):
            continue
        if has_meaningful_text_between(
            ordered, trigger_index, positions[message.message_id], author_id
        ):
            logger.debug(
                "adjacent_image_rejected",
                trigger_id=trigger.message_id,
                message_id=message.message_id,
                reason="text_between",
            )
            continue
        result.messages.append(message)

    return result


def find_adjacent_texts(
    trigger: RawMessage,
    messages: Sequence[RawMessage],
    window_seconds: int = ADJACENT_WINDOW_SECONDS,
) -> AdjacentTexts:
    """Collect same-author text messages near ``trigger`` as HTML.

    Messages without media qualify, as do media messages whose caption is
    longer than 10 characters. The trigger itself is never included.
    """
    result = AdjacentTexts()
    author_id = trigger.author_id
    if not author_id:
        return result

    for message in messages:
        if message.message_id == trigger.message_id:
            continue
        if message.author_id != author_id:
            continue
        if not _within_window(trigger, message, window_seconds):
            continue
        if message.has_media and len(message.text) <= ADJACENT_CAPTION_MIN_LENGTH:
            continue
        if not message.text.strip():
            continue
        result.html_fragments.append(
            format_message_html(message.text, message.annotations)
        )
        result.message_ids.append(message.message_id)

    return result


__all__ = [
    "AdjacentImages",
    "AdjacentTexts",
    "find_adjacent_images",
    "find_adjacent_texts",
    "has_meaningful_text_between",
]
