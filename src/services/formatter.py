"""Render message text with style annotations as inline HTML.

Annotations may nest or overlap. The renderer sweeps the sorted set of
boundary positions once, keeping an explicit stack of open annotations:
whenever an annotation ends, every open tag is closed in reverse order and
the still-active ones are reopened, so the output stays well nested even
for overlapping spans.
"""

from __future__ import annotations

import html
import re
from collections.abc import Sequence
from typing import Final
from urllib.parse import quote

from src.domain.models import AnnotationType, StyleAnnotation

LINE_BREAK: Final[str] = "<br>"
_LINE_BREAK_RUN: Final[re.Pattern[str]] = re.compile(r"<br>(\s*<br>){2,}")

# encodeURIComponent leaves these characters untouched
_URI_COMPONENT_SAFE: Final[str] = "-_.!~*'()"

_SIMPLE_TAGS: Final[dict[AnnotationType, tuple[str, str]]] = {
    AnnotationType.BOLD: ("<b>", "</b>"),
    AnnotationType.ITALIC: ("<i>", "</i>"),
    AnnotationType.UNDERLINE: ("<u>", "</u>"),
    AnnotationType.STRIKETHROUGH: ("<s>", "</s>"),
    AnnotationType.CODE: ("<code>", "</code>"),
    AnnotationType.BOT_COMMAND: ("<code>", "</code>"),
    AnnotationType.PRE: ("<pre>", "</pre>"),
    AnnotationType.SPOILER: ('<span class="tg-spoiler">', "</span>"),
    AnnotationType.BLOCKQUOTE: ("<blockquote>", "</blockquote>"),
}

_LINK_CLOSE: Final[str] = "</a>"


def line_breaks_to_html(text: str) -> str:
    """Replace newlines with ``<br>`` and cap consecutive breaks at two.

    Example:
        >>> line_breaks_to_html("a\\n\\n\\n\\nb")
        'a<br><br>b'
    """
    return _LINE_BREAK_RUN.sub("<br><br>", text.replace("\n", LINE_BREAK))


def _link_href(annotation: StyleAnnotation, content: str) -> str | None:
    kind = annotation.type
    if kind == AnnotationType.TEXT_LINK:
        url = annotation.url or ""
        return url if url.startswith("http") else f"https://{url}"
    if kind == AnnotationType.TEXT_MENTION:
        return f"tg://user?id={annotation.user_id}"
    if kind == AnnotationType.MENTION:
        return f"tg://resolve?domain={content.lstrip('@')}"
    if kind in (AnnotationType.HASHTAG, AnnotationType.CASHTAG):
        return f"tg://search?query={quote(content, safe=_URI_COMPONENT_SAFE)}"
    if kind == AnnotationType.URL:
        return content
    if kind == AnnotationType.EMAIL:
        return f"mailto:{content}"
    if kind == AnnotationType.PHONE_NUMBER:
        return f"tel:{content}"
    return None


def annotation_tags(annotation: StyleAnnotation, content: str) -> tuple[str, str]:
    """Opening and closing tag for one annotation.

    Args:
        annotation: Annotation to render
        content: Text covered by the annotation (used for derived links)

    Returns:
        (opening, closing) pair; empty strings for unknown annotation types
    """
    simple = _SIMPLE_TAGS.get(annotation.type)
    if simple is not None:
        return simple

    href = _link_href(annotation, content)
    if href is None:
        return "", ""
    return f'<a href="{html.escape(href, quote=True)}" target="_blank">', _LINK_CLOSE


class _Utf16Text:
    """Slices a string by UTF-16 code unit offsets."""

    def __init__(self, text: str) -> None:
        self._units = text.encode("utf-16-le", errors="surrogatepass")
        self.length = len(self._units) // 2

    def slice(self, start: int, end: int) -> str:
        start = max(0, min(start, self.length))
        end = max(start, min(end, self.length))
        return self._units[start * 2 : end * 2].decode(
            "utf-16-le", errors="surrogatepass"
        )


def format_message_html(
    text: str, annotations: Sequence[StyleAnnotation] | None = None
) -> str:
    """Convert message text plus style annotations into HTML.

    Args:
        text: Plain message text
        annotations: Style spans over ``text`` in UTF-16 offsets

    Returns:
        HTML with inline tags and ``<br>`` line breaks

    Example:
        >>> spans = [
        ...     StyleAnnotation(type=AnnotationType.BOLD, offset=0, length=5),
        ...     StyleAnnotation(type=AnnotationType.ITALIC, offset=3, length=6),
        ... ]
        >>> format_message_html("Hello world", spans)
        '<b>Hel<i>lo</i></b><i> wor</i>ld'
    """
    source = _Utf16Text(text)
    # Spans starting at or past the end of the text cover nothing
    spans = [
        a for a in annotations or () if a.length > 0 and a.offset < source.length
    ]
    if not spans:
        return line_breaks_to_html(text)

    tags = [annotation_tags(a, source.slice(a.offset, a.end)) for a in spans]

    starts_at: dict[int, list[int]] = {}
    ends_at: dict[int, list[int]] = {}
    for index, span in enumerate(spans):
        start = min(span.offset, source.length)
        end = min(span.end, source.length)
        starts_at.setdefault(start, []).append(index)
        ends_at.setdefault(end, []).append(index)

    parts: list[str] = []
    open_stack: list[int] = []
    last_pos = 0

    for pos in sorted(starts_at.keys() | ends_at.keys()):
        if pos > last_pos:
            parts.append(source.slice(last_pos, pos))

        ending = ends_at.get(pos)
        if ending:
            for index in reversed(open_stack):
                parts.append(tags[index][1])
            ending_set = set(ending)
            open_stack = [i for i in open_stack if i not in ending_set]
            for index in open_stack:
                parts.append(tags[index][0])

        for index in starts_at.get(pos, ()):
            open_stack.append(index)
            parts.append(tags[index][0])

        last_pos = pos

    if last_pos < source.length:
        parts.append(source.slice(last_pos, source.length))

    return line_breaks_to_html("".join(parts))


__all__ = ["annotation_tags", "format_message_html", "line_breaks_to_html"]
