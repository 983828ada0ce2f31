from __future__ import annotations

import re

from .errors import InvalidPhoneNumberError

_E164_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")


def _strip_formatting(value: str) -> str:
    return "".join(ch for ch in value.strip() if ch.isdigit() or ch == "+")


def is_valid_phone_number(value: str | None) -> bool:
    if not value:
        return False
    return _E164_PATTERN.match(_strip_formatting(value)) is not None


def normalize_phone_number(value: str | None) -> str:
    """Return the E.164 form of ``value``.

    Ten digit numbers are treated as North American and get a ``+1`` prefix;
    eleven digit numbers starting with ``1`` only get the ``+``.
    """
    if value is None or not is_valid_phone_number(value):
        raise InvalidPhoneNumberError(value or "")
    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) == 10 and not value.strip().startswith("+"):
        return f"+1{digits}"
    return f"+{digits}"


def mask_phone_number(value: str | None) -> str:
    if not value:
        return "<none>"
    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) <= 4:
        return "***"
    return f"***{digits[-4:]}"
