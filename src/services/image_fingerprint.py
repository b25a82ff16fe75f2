"""Image resizing and perceptual fingerprints.

Fingerprints are 64-bit pHashes packed into a 16 character lowercase hex
token. The token is embedded in the stored image's public id
(``{slug}/{token}``) so any image URL carries its own fingerprint.
"""

from __future__ import annotations

import base64
import re
from io import BytesIO
from pathlib import PurePosixPath
from typing import Final
from urllib.parse import urlparse

import imagehash
from PIL import Image, UnidentifiedImageError

from src.domain.deduplication_constants import IMAGE_HASH_DISTANCE_THRESHOLD
from src.domain.exceptions import FingerprintError, ValidationError

COVER_IMAGE_MAX_SIZE: Final[tuple[int, int]] = (850, 850)
COVER_IMAGE_JPEG_QUALITY: Final[int] = 95

HASH_BITS: Final[int] = 64
TOKEN_LENGTH: Final[int] = HASH_BITS // 4
_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[0-9a-f]{16}$")


def resize_cover_image(image_bytes: bytes) -> bytes:
    """Fit an image into 850x850 (never upscaled) and re-encode as JPEG.

    Raises:
        ValidationError: If the bytes are not a decodable image
    """
    try:
        with Image.open(BytesIO(image_bytes)) as image:
            rgb = image.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError(f"Unsupported image data: {exc}") from exc

    rgb.thumbnail(COVER_IMAGE_MAX_SIZE, Image.Resampling.LANCZOS)
    buffer = BytesIO()
    rgb.save(buffer, format="JPEG", quality=COVER_IMAGE_JPEG_QUALITY)
    return buffer.getvalue()


def jpeg_data_url(jpeg_bytes: bytes) -> str:
    """Inline JPEG bytes as a data URL for the extraction service."""
    encoded = base64.b64encode(jpeg_bytes).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


def encode_hash(bits: int) -> str:
    """Pack a 64-bit hash value into its printable token."""
    if bits < 0 or bits >= 1 << HASH_BITS:
        raise FingerprintError(f"Hash value does not fit in {HASH_BITS} bits")
    return f"{bits:0{TOKEN_LENGTH}x}"


def decode_hash(token: str) -> int:
    """Unpack a printable token into its 64-bit hash value.

    Raises:
        FingerprintError: If the token is not exactly 16 hex characters
    """
    if not isinstance(token, str) or not _TOKEN_PATTERN.match(token):
        raise FingerprintError(f"Invalid fingerprint token: {token!r}")
    return int(token, 16)


def fingerprint(image_bytes: bytes) -> str:
    """Compute the pHash token of an image.

    Raises:
        FingerprintError: If the bytes are not a decodable image
    """
    try:
        with Image.open(BytesIO(image_bytes)) as image:
            image_hash = imagehash.phash(image)
    except (UnidentifiedImageError, OSError) as exc:
        raise FingerprintError(f"Cannot fingerprint image: {exc}") from exc
    return encode_hash(int(str(image_hash), 16))


def distance(token_a: str, token_b: str) -> int:
    """Hamming distance between two fingerprint tokens."""
    return (decode_hash(token_a) ^ decode_hash(token_b)).bit_count()


def is_same_photo(
    token_a: str, token_b: str, threshold: int = IMAGE_HASH_DISTANCE_THRESHOLD
) -> bool:
    """Whether two fingerprints are close enough to be the same picture."""
    return distance(token_a, token_b) <= threshold


def token_from_url(url: str) -> str | None:
    """Extract the fingerprint token embedded in a stored image URL.

    Example:
        >>> token_from_url("https://cdn.example/img/2025-01-01-yoga/c3a1f0e0d0c0b0a0.jpg")
        'c3a1f0e0d0c0b0a0'
    """
    if not url:
        return None
    stem = PurePosixPath(urlparse(url).path).name.split(".", 1)[0]
    return stem if _TOKEN_PATTERN.match(stem) else None


__all__ = [
    "COVER_IMAGE_MAX_SIZE",
    "decode_hash",
    "distance",
    "encode_hash",
    "fingerprint",
    "is_same_photo",
    "jpeg_data_url",
    "resize_cover_image",
    "token_from_url",
]
