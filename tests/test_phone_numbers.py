from __future__ import annotations

import pytest

from sms_bridge.errors import InvalidPhoneNumberError
from sms_bridge.phone_numbers import is_valid_phone_number, mask_phone_number, normalize_phone_number


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("+15551234567", "+15551234567"),
        ("(555) 123-4567", "+15551234567"),
        ("555.123.4567", "+15551234567"),
        ("15551234567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
    ],
)
def test_normalize_phone_number(raw: str, expected: str) -> None:
    assert normalize_phone_number(raw) == expected


@pytest.mark.parametrize("raw", ["", "abc", "+0123456789", "+1234567890123456", None])
def test_invalid_phone_numbers(raw: str | None) -> None:
    assert is_valid_phone_number(raw) is False
    with pytest.raises(InvalidPhoneNumberError):
        normalize_phone_number(raw)


def test_mask_phone_number() -> None:
    assert mask_phone_number("+15551234567") == "***4567"
    assert mask_phone_number("12") == "***"
    assert mask_phone_number(None) == "<none>"
