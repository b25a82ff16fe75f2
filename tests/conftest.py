"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import random
from collections.abc import Callable, Generator
from datetime import datetime, timedelta
from io import BytesIO
from pathlib import Path
from typing import Any

import pytest
import pytz
from PIL import Image, ImageDraw

from src.adapters.sqlite_repository import SQLiteRepository
from src.config.settings import Settings
from src.domain.models import (
    EventCandidate,
    MediaKind,
    PersistedEvent,
    RawMessage,
    ScrapingTarget,
)
from src.services.slug import generate_slug

BASE_TIME = datetime(2030, 5, 1, 10, 0, tzinfo=pytz.UTC)
"""Reference message time; far enough ahead that extracted dates are future."""

FLYER_GRID = 8


@pytest.fixture
def settings(tmp_path_factory: pytest.TempPathFactory) -> Settings:
    """Settings with a throwaway SQLite database."""

    base_settings = Settings(openai_api_key="test-openai-key")
    db_path = tmp_path_factory.mktemp("db") / "test.sqlite"
    return base_settings.model_copy(update={"db_path": str(db_path)})


@pytest.fixture
def repo(settings: Settings) -> Generator[SQLiteRepository, None, None]:
    """Provide a repository on the temporary database."""

    repository = SQLiteRepository(settings.db_path)
    try:
        yield repository
    finally:
        db_path = Path(settings.db_path)
        for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
            if path.exists():
                try:
                    path.unlink()
                except OSError:
                    pass


@pytest.fixture
def make_message() -> Callable[..., RawMessage]:
    """Factory for raw messages; ``seconds`` is the offset from BASE_TIME."""

    def _make(
        message_id: int,
        text: str = "",
        *,
        seconds: int = 0,
        author_id: str | None = "1001",
        room_id: str = "-100123",
        media_kind: MediaKind = MediaKind.NONE,
        mime_type: str | None = None,
        **extra: Any,
    ) -> RawMessage:
        return RawMessage(
            message_id=message_id,
            room_id=room_id,
            author_id=author_id,
            date=BASE_TIME + timedelta(seconds=seconds),
            text=text,
            media_kind=media_kind,
            mime_type=mime_type,
            **extra,
        )

    return _make


@pytest.fixture
def make_target() -> Callable[..., ScrapingTarget]:
    def _make(room_id: str = "-100123", **extra: Any) -> ScrapingTarget:
        return ScrapingTarget(room_id=room_id, name="Berlin Events", **extra)

    return _make


@pytest.fixture
def make_candidate() -> Callable[..., EventCandidate]:
    """Factory for candidates; the slug follows name and start."""

    def _make(
        name: str = "Yoga Workshop",
        start_at: datetime = BASE_TIME + timedelta(days=30),
        **extra: Any,
    ) -> EventCandidate:
        extra.setdefault("address", ["Yoga Loft", "Main St 5", "Berlin"])
        return EventCandidate(
            name=name,
            slug=extra.pop("slug", None) or generate_slug(name, start_at),
            start_at=start_at,
            **extra,
        )

    return _make


@pytest.fixture
def make_event() -> Callable[..., PersistedEvent]:
    """Factory for persisted events not backed by a database."""

    def _make(
        event_id: int,
        name: str = "Yoga Workshop",
        start_at: datetime = BASE_TIME + timedelta(days=30),
        **extra: Any,
    ) -> PersistedEvent:
        return PersistedEvent(
            id=event_id,
            name=name,
            slug=extra.pop("slug", None) or f"{generate_slug(name, start_at)}-{event_id}",
            start_at=start_at,
            created_at=BASE_TIME,
            updated_at=BASE_TIME,
            **extra,
        )

    return _make


def render_flyer(seed: int = 0, size: tuple[int, int] = (400, 300)) -> bytes:
    """PNG of an 8x8 grid of gray blocks whose shades are drawn from ``seed``.

    The same seed renders the same picture at any size, so resized copies
    fingerprint as the same photo. Different seeds give unrelated grids
    whose perceptual hashes differ in roughly half of their bits.
    """

    rng = random.Random(seed)
    image = Image.new("L", size)
    draw = ImageDraw.Draw(image)
    width, height = size
    for row in range(FLYER_GRID):
        for column in range(FLYER_GRID):
            box = (
                column * width // FLYER_GRID,
                row * height // FLYER_GRID,
                (column + 1) * width // FLYER_GRID,
                (row + 1) * height // FLYER_GRID,
            )
            draw.rectangle(box, fill=rng.randrange(256))
    buffer = BytesIO()
    image.convert("RGB").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def make_flyer() -> Callable[..., bytes]:
    return render_flyer
