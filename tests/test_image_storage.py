"""Tests for the Cloudinary image storage adapter."""

from unittest.mock import Mock

import pytest
import requests

from src.adapters.image_storage import (
    CloudinaryImageStorage,
    image_public_id,
    public_id_from_url,
)
from src.domain.exceptions import ImageStorageError


def _response(payload: dict | None = None) -> Mock:
    response = Mock()
    response.json.return_value = payload or {}
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def session() -> Mock:
    return Mock()


@pytest.fixture
def storage(session: Mock) -> CloudinaryImageStorage:
    return CloudinaryImageStorage("demo", "key", "secret", "events", session=session)


class TestPublicIds:
    def test_image_public_id(self) -> None:
        assert image_public_id(" 2030-05-31-yoga ", "00ff00ff00ff00ff") == (
            "2030-05-31-yoga/00ff00ff00ff00ff"
        )

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            (
                "https://res.cloudinary.com/demo/image/upload/v1717/2030-05-31-yoga/00ff00ff00ff00ff.jpg",
                "2030-05-31-yoga/00ff00ff00ff00ff",
            ),
            (
                "https://res.cloudinary.com/demo/image/upload/2030-05-31-yoga/00ff00ff00ff00ff.jpg",
                "2030-05-31-yoga/00ff00ff00ff00ff",
            ),
            ("https://cdn.example/flyer.jpg", None),
            ("https://res.cloudinary.com/demo/image/upload/v1717/", None),
        ],
    )
    def test_public_id_from_url(self, url: str, expected: str | None) -> None:
        assert public_id_from_url(url) == expected


class TestUpload:
    def test_upload_returns_secure_url(
        self, storage: CloudinaryImageStorage, session: Mock
    ) -> None:
        session.post.return_value = _response({"secure_url": "https://res.cloudinary.com/x.jpg"})

        url = storage.upload_image(b"jpeg", "2030-05-31-yoga", "00ff00ff00ff00ff")

        assert url == "https://res.cloudinary.com/x.jpg"
        args, kwargs = session.post.call_args
        assert args[0] == "https://api.cloudinary.com/v1_1/demo/image/upload"
        assert kwargs["data"]["public_id"] == "2030-05-31-yoga/00ff00ff00ff00ff"
        assert kwargs["data"]["upload_preset"] == "events"

    def test_empty_image_is_rejected(self, storage: CloudinaryImageStorage) -> None:
        with pytest.raises(ImageStorageError):
            storage.upload_image(b"", "slug", "token")

    def test_http_error(self, storage: CloudinaryImageStorage, session: Mock) -> None:
        response = _response()
        response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
        session.post.return_value = response

        with pytest.raises(ImageStorageError, match="failed"):
            storage.upload_image(b"jpeg", "slug", "token")

    def test_missing_credentials(self) -> None:
        with pytest.raises(ImageStorageError):
            CloudinaryImageStorage("", "key", "secret", "events")


def test_list_follows_cursor(storage: CloudinaryImageStorage, session: Mock) -> None:
    session.get.side_effect = [
        _response(
            {
                "resources": [{"public_id": "a/1", "secure_url": "https://x/a/1.jpg", "bytes": 10}],
                "next_cursor": "page-2",
            }
        ),
        _response({"resources": [{"public_id": "b/2", "secure_url": "https://x/b/2.jpg"}]}),
    ]

    images = storage.list_images()

    assert [image.public_id for image in images] == ["a/1", "b/2"]
    assert [image.size_bytes for image in images] == [10, 0]
    assert session.get.call_args_list[1].kwargs["params"]["next_cursor"] == "page-2"
    assert session.get.call_args.kwargs["auth"] == ("key", "secret")


def test_delete_in_batches_skips_failed_batch(
    storage: CloudinaryImageStorage, session: Mock
) -> None:
    failed = _response()
    failed.raise_for_status.side_effect = requests.HTTPError("429")
    session.delete.side_effect = [_response(), failed, _response()]

    deleted = storage.delete_images([f"slug/{i}" for i in range(250)])

    assert deleted == 150
    assert session.delete.call_count == 3
    assert len(session.delete.call_args_list[0].kwargs["data"]["public_ids[]"]) == 100
    assert len(session.delete.call_args_list[2].kwargs["data"]["public_ids[]"]) == 50
