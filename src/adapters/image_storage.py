"""Cloudinary image storage adapter (REST API via requests)."""

import re
from typing import Any, Final
from urllib.parse import urlparse

import requests

from src.config.logging_config import get_logger
from src.domain.exceptions import ImageStorageError
from src.domain.models import StoredImage

logger = get_logger(__name__)

CLOUDINARY_API_BASE: Final[str] = "https://api.cloudinary.com/v1_1"
DELETE_BATCH_SIZE: Final[int] = 100
"""Public ids per delete request (Cloudinary admin API limit)."""

LIST_PAGE_SIZE: Final[int] = 500
DEFAULT_TIMEOUT_SECONDS: Final[float] = 30.0


_VERSION_SEGMENT: Final[re.Pattern[str]] = re.compile(r"^v\d+$")


def image_public_id(slug: str, token: str) -> str:
    return f"{slug.strip()}/{token.strip()}"


def public_id_from_url(url: str) -> str | None:
    """Public id of a delivery URL, e.g. ``.../upload/v17/slug/token.jpg``.

    Returns None for URLs that are not Cloudinary upload URLs.
    """
    path = urlparse(url).path
    marker = "/upload/"
    if marker not in path:
        return None
    segments = [s for s in path.split(marker, 1)[1].split("/") if s]
    if segments and _VERSION_SEGMENT.match(segments[0]):
        segments = segments[1:]
    if not segments:
        return None
    segments[-1] = segments[-1].rsplit(".", 1)[0]
    return "/".join(segments)


class CloudinaryImageStorage:
    """Uploads event images and administers stored resources.

    Uploads are unsigned and go through an upload preset; listing and
    deletion use the admin API with HTTP basic auth.
    """

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        upload_preset: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        if not cloud_name or not api_key:
            raise ImageStorageError("Cloudinary cloud name and API key must be set")
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.upload_preset = upload_preset
        self.timeout = timeout
        self._session = session or requests.Session()

    @property
    def _base_url(self) -> str:
        return f"{CLOUDINARY_API_BASE}/{self.cloud_name}"

    @property
    def _admin_auth(self) -> tuple[str, str]:
        return self.api_key, self.api_secret

    def upload_image(self, image_bytes: bytes, slug: str, token: str) -> str:
        """Upload a JPEG under public id ``{slug}/{token}``.

        Returns:
            The secure URL of the stored image

        Raises:
            ImageStorageError: On empty input or a failed upload
        """
        if not image_bytes:
            raise ImageStorageError("Cannot upload empty image")
        if not slug.strip() or not token.strip():
            raise ImageStorageError("Slug and fingerprint token are required")

        public_id = image_public_id(slug, token)
        try:
            response = self._session.post(
                f"{self._base_url}/image/upload",
                data={
                    "api_key": self.api_key,
                    "upload_preset": self.upload_preset,
                    "public_id": public_id,
                },
                files={"file": (f"{token}.jpg", image_bytes, "image/jpeg")},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload: dict[str, Any] = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ImageStorageError(f"Upload of {public_id} failed: {exc}") from exc

        secure_url = payload.get("secure_url")
        if not secure_url:
            raise ImageStorageError(f"Upload of {public_id} returned no secure_url")
        logger.info("image_uploaded", public_id=public_id, size_bytes=len(image_bytes))
        return str(secure_url)

    def list_images(self) -> list[StoredImage]:
        """List every stored image, following pagination cursors.

        Raises:
            ImageStorageError: When a page cannot be fetched
        """
        images: list[StoredImage] = []
        next_cursor: str | None = None
        while True:
            params: dict[str, Any] = {"max_results": LIST_PAGE_SIZE}
            if next_cursor:
                params["next_cursor"] = next_cursor
            try:
                response = self._session.get(
                    f"{self._base_url}/resources/image",
                    params=params,
                    auth=self._admin_auth,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                payload: dict[str, Any] = response.json()
            except (requests.RequestException, ValueError) as exc:
                raise ImageStorageError(f"Listing images failed: {exc}") from exc

            for resource in payload.get("resources", []):
                images.append(
                    StoredImage(
                        public_id=resource["public_id"],
                        secure_url=resource["secure_url"],
                        size_bytes=int(resource.get("bytes") or 0),
                    )
                )
            next_cursor = payload.get("next_cursor")
            if not next_cursor:
                break

        logger.info("images_listed", count=len(images))
        return images

    def delete_images(self, public_ids: list[str]) -> int:
        """Delete images in batches of 100.

        A failed batch is logged and skipped; the remaining batches still run.

        Returns:
            Number of public ids in successfully deleted batches
        """
        ids = [public_id.strip() for public_id in public_ids if public_id and public_id.strip()]
        deleted = 0
        for start in range(0, len(ids), DELETE_BATCH_SIZE):
            batch = ids[start : start + DELETE_BATCH_SIZE]
            batch_number = start // DELETE_BATCH_SIZE + 1
            try:
                response = self._session.delete(
                    f"{self._base_url}/resources/image/upload",
                    data={"public_ids[]": batch},
                    auth=self._admin_auth,
                    timeout=self.timeout,
                )
                response.raise_for_status()
            except requests.RequestException as exc:
                logger.error(
                    "image_delete_batch_failed",
                    batch=batch_number,
                    size=len(batch),
                    error=str(exc),
                )
                continue
            deleted += len(batch)
            logger.info("image_delete_batch_finished", batch=batch_number, size=len(batch))
        return deleted
