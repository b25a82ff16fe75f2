"""Tests for cleanup_unused_images_use_case."""

from collections.abc import Callable
from unittest.mock import Mock

import pytest

from src.adapters.sqlite_repository import SQLiteRepository
from src.domain.models import EventCandidate, StoredImage
from src.use_cases.cleanup_images import cleanup_unused_images_use_case

CDN = "https://res.cloudinary.com/demo/image/upload"


@pytest.fixture
def storage() -> Mock:
    image_storage = Mock()
    image_storage.list_images.return_value = [
        StoredImage(
            public_id="yoga/00000000000000ff",
            secure_url=f"{CDN}/v1/yoga/00000000000000ff.jpg",
            size_bytes=1000,
        ),
        StoredImage(
            public_id="yoga/ffffffffffffffff",
            secure_url=f"{CDN}/v1/yoga/ffffffffffffffff.jpg",
            size_bytes=2000,
        ),
        StoredImage(
            public_id="dance/0f0f0f0f0f0f0f0f",
            secure_url=f"{CDN}/v1/dance/0f0f0f0f0f0f0f0f.jpg",
            size_bytes=300,
        ),
    ]
    image_storage.delete_images.side_effect = lambda public_ids: len(public_ids)
    return image_storage


@pytest.fixture
def referencing_repo(
    repo: SQLiteRepository, make_candidate: Callable[..., EventCandidate]
) -> SQLiteRepository:
    repo.upsert_event(
        make_candidate(
            image_urls=[
                f"{CDN}/v1/yoga/00000000000000ff.jpg",
                # Same image delivered under a newer version segment
                f"{CDN}/v2/yoga/ffffffffffffffff.jpg",
            ]
        )
    )
    return repo


def test_unreferenced_images_are_deleted(
    storage: Mock, referencing_repo: SQLiteRepository
) -> None:
    result = cleanup_unused_images_use_case(storage, referencing_repo)

    storage.delete_images.assert_called_once_with(["dance/0f0f0f0f0f0f0f0f"])
    assert result.stored_images == 3
    assert result.referenced_images == 2
    assert result.unreferenced_images == 1
    assert result.deleted_images == 1
    assert result.freed_bytes == 300


def test_dry_run_deletes_nothing(storage: Mock, referencing_repo: SQLiteRepository) -> None:
    result = cleanup_unused_images_use_case(storage, referencing_repo, dry_run=True)

    storage.delete_images.assert_not_called()
    assert result.unreferenced_images == 1
    assert result.deleted_images == 0
    assert result.freed_bytes == 300


def test_nothing_to_delete(storage: Mock, repo: SQLiteRepository) -> None:
    storage.list_images.return_value = []

    result = cleanup_unused_images_use_case(storage, repo)

    storage.delete_images.assert_not_called()
    assert result.stored_images == 0
