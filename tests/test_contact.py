"""Tests for contact normalization."""

import pytest

from src.services.contact import parse_contact


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("@yoga_munich", "tg://resolve?domain=yoga_munich"),
        ("https://t.me/yoga_munich", "tg://resolve?domain=yoga_munich"),
        ("t.me/yoga_munich/", "tg://resolve?domain=yoga_munich"),
        ("info@yoga-loft.de", "mailto:info@yoga-loft.de"),
        ("+49 171 1234567", "tel:+491711234567"),
        ("030 / 123 456", "tel:030123456"),
        ("yoga-loft.de", "https://yoga-loft.de"),
        ("www.yoga-loft.de/kurse", "https://www.yoga-loft.de/kurse"),
        ("https://yoga-loft.de/events", "https://yoga-loft.de/events"),
        ("tel:+4930123456", "tel:+4930123456"),
    ],
)
def test_contact_is_normalized(raw: str, expected: str) -> None:
    assert parse_contact(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "ask at the door", "123"])
def test_unrecognized_contact_is_dropped(raw: str | None) -> None:
    assert parse_contact(raw) is None
