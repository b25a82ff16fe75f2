"""Tests for image resizing and perceptual fingerprints."""

from collections.abc import Callable
from io import BytesIO

import pytest
from PIL import Image

from src.domain.exceptions import FingerprintError, ValidationError
from src.services import image_fingerprint as fp


class TestResizeCoverImage:
    def test_large_image_fits_in_box(self, make_flyer: Callable[..., bytes]) -> None:
        resized = fp.resize_cover_image(make_flyer(0, size=(2000, 1000)))

        with Image.open(BytesIO(resized)) as image:
            assert image.format == "JPEG"
            assert image.size == (850, 425)

    def test_small_image_is_not_upscaled(self, make_flyer: Callable[..., bytes]) -> None:
        resized = fp.resize_cover_image(make_flyer(0, size=(400, 300)))

        with Image.open(BytesIO(resized)) as image:
            assert image.size == (400, 300)

    def test_invalid_bytes_raise(self) -> None:
        with pytest.raises(ValidationError):
            fp.resize_cover_image(b"not an image")

    def test_data_url(self) -> None:
        assert fp.jpeg_data_url(b"\xff\xd8").startswith("data:image/jpeg;base64,")


class TestHashTokens:
    def test_encode_pads_to_sixteen_hex_chars(self) -> None:
        assert fp.encode_hash(0xF) == "000000000000000f"

    def test_decode_inverts_encode(self) -> None:
        bits = 0xD1C4E0F0F8F0C080
        assert fp.decode_hash(fp.encode_hash(bits)) == bits

    @pytest.mark.parametrize("token", ["xyz", "ABCDEF0123456789", "0" * 15, "0" * 17])
    def test_decode_rejects_malformed_tokens(self, token: str) -> None:
        with pytest.raises(FingerprintError):
            fp.decode_hash(token)

    def test_encode_rejects_values_out_of_range(self) -> None:
        with pytest.raises(FingerprintError):
            fp.encode_hash(1 << 64)

    def test_distance_counts_differing_bits(self) -> None:
        assert fp.distance("0000000000000000", "0000000000000003") == 2
        assert fp.distance("ffffffffffffffff", "0000000000000000") == 64

    @pytest.mark.parametrize(
        ("token_a", "token_b"),
        [
            ("d1c4e0f0f8f0c080", "d1c4e0f0f8f0c080"),
            ("d1c4e0f0f8f0c080", "0000000000000000"),
            ("8000000000000001", "7ffffffffffffffe"),
        ],
    )
    def test_distance_is_symmetric(self, token_a: str, token_b: str) -> None:
        assert fp.distance(token_a, token_b) == fp.distance(token_b, token_a)
        assert fp.distance(token_a, token_a) == 0

    def test_distance_raises_on_malformed_token(self) -> None:
        with pytest.raises(FingerprintError):
            fp.distance("0000000000000000", "zz")


class TestFingerprint:
    def test_same_picture_at_other_size_is_same_photo(
        self, make_flyer: Callable[..., bytes]
    ) -> None:
        small = fp.fingerprint(fp.resize_cover_image(make_flyer(0, size=(400, 300))))
        large = fp.fingerprint(fp.resize_cover_image(make_flyer(0, size=(1600, 1200))))

        assert fp.is_same_photo(small, large)

    @pytest.mark.parametrize(("seed_a", "seed_b"), [(0, 3), (10, 11), (11, 12)])
    def test_different_pictures_are_far_apart(
        self, make_flyer: Callable[..., bytes], seed_a: int, seed_b: int
    ) -> None:
        token_a = fp.fingerprint(fp.resize_cover_image(make_flyer(seed_a)))
        token_b = fp.fingerprint(fp.resize_cover_image(make_flyer(seed_b)))

        assert not fp.is_same_photo(token_a, token_b)

    def test_distance_is_zero_to_itself_and_symmetric(
        self, make_flyer: Callable[..., bytes]
    ) -> None:
        token_a = fp.fingerprint(make_flyer(1))
        token_b = fp.fingerprint(make_flyer(2))

        assert fp.distance(token_a, token_a) == 0
        assert fp.distance(token_a, token_b) == fp.distance(token_b, token_a)

    def test_token_shape(self, make_flyer: Callable[..., bytes]) -> None:
        token = fp.fingerprint(make_flyer(1))

        assert len(token) == 16
        assert fp.decode_hash(token) >= 0

    def test_undecodable_bytes_raise(self) -> None:
        with pytest.raises(FingerprintError):
            fp.fingerprint(b"garbage")


class TestTokenFromUrl:
    def test_token_is_read_from_file_name(self) -> None:
        url = "https://res.cloudinary.com/demo/image/upload/v17/2030-05-31-yoga/c3a1f0e0d0c0b0a0.jpg"

        assert fp.token_from_url(url) == "c3a1f0e0d0c0b0a0"

    @pytest.mark.parametrize(
        "url",
        ["", "https://cdn.example/img/flyer.jpg", "https://cdn.example/img/C3A1F0E0D0C0B0A0.jpg"],
    )
    def test_urls_without_token(self, url: str) -> None:
        assert fp.token_from_url(url) is None
