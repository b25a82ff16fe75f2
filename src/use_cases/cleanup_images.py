"""Cleanup unused images use case.

Deletes stored images that no event references any more, e.g. images of
events removed by deduplication.
"""

from time import perf_counter

from src.adapters.image_storage import public_id_from_url
from src.config.logging_config import get_logger
from src.domain.models import ImageCleanupResult
from src.domain.protocols import ImageStorageProtocol, RepositoryProtocol
from src.observability.metrics import PIPELINE_STAGE_DURATION_SECONDS

logger = get_logger(__name__)


def cleanup_unused_images_use_case(
    storage: ImageStorageProtocol,
    repository: RepositoryProtocol,
    *,
    dry_run: bool = False,
) -> ImageCleanupResult:
    """Delete every stored image that no event references.

    An image counts as referenced when an event holds its URL, or any URL
    with the same public id (delivery URLs may carry a version segment).

    Args:
        storage: Image hosting service
        repository: Event store
        dry_run: Only report what would be deleted

    Returns:
        ImageCleanupResult; ``freed_bytes`` is the size of the unreferenced
        images, reclaimed unless running dry
    """
    stage_start = perf_counter()
    try:
        stored = storage.list_images()
        referenced_urls = repository.get_referenced_image_urls()
        referenced_ids = {
            public_id
            for url in referenced_urls
            if (public_id := public_id_from_url(url)) is not None
        }

        unused = [
            image
            for image in stored
            if image.secure_url not in referenced_urls
            and image.public_id not in referenced_ids
        ]
        freed_bytes = sum(image.size_bytes for image in unused)
        logger.info(
            "image_cleanup_scanned",
            stored_images=len(stored),
            referenced_images=len(referenced_urls),
            unreferenced_images=len(unused),
            dry_run=dry_run,
        )

        deleted = 0
        if unused and not dry_run:
            deleted = storage.delete_images([image.public_id for image in unused])

        result = ImageCleanupResult(
            stored_images=len(stored),
            referenced_images=len(referenced_urls),
            unreferenced_images=len(unused),
            deleted_images=deleted,
            freed_bytes=freed_bytes,
        )
        logger.info(
            "image_cleanup_finished",
            deleted_images=deleted,
            freed_bytes=freed_bytes,
            dry_run=dry_run,
        )
        return result
    finally:
        PIPELINE_STAGE_DURATION_SECONDS.labels(stage="image_cleanup").observe(
            perf_counter() - stage_start
        )
