"""Ghana phone number utilities.

:func:`normalize_phone` is total: it never raises and returns input it
does not recognise unchanged.  Callers that need a dialable number run
the result through :func:`require_valid_phone`, which enforces the
canonical ``+233XXXXXXXXX`` form.
"""

from __future__ import annotations

import re
from typing import Final

COUNTRY_CODE: Final[str] = "233"
CANONICAL_PREFIX: Final[str] = f"+{COUNTRY_CODE}"
TRUNK_PREFIX: Final[str] = "0"

_SEPARATORS_RE: Final[re.Pattern[str]] = re.compile(r"[\s\-]+")
_CANONICAL_RE: Final[re.Pattern[str]] = re.compile(r"^\+233\d{9}$")


class InvalidPhoneNumberError(ValueError):
    """Raised when a number cannot be turned into a dialable +233 number."""


def normalize_phone(raw: str) -> str:
    """Canonicalise a Ghana number.

    ``0244123456``, ``233244123456`` and ``+233 24-412-3456`` all become
    ``+233244123456``.  Anything else comes back with only whitespace and
    hyphens stripped.
    """
    phone = _SEPARATORS_RE.sub("", raw or "")

    if phone.startswith(TRUNK_PREFIX):
        return CANONICAL_PREFIX + phone[len(TRUNK_PREFIX):]
    if phone.startswith(COUNTRY_CODE):
        return "+" + phone
    return phone


def is_valid_phone(phone: str) -> bool:
    """Whether *phone* is already in canonical dialable form."""
    return bool(_CANONICAL_RE.match(phone))


def require_valid_phone(raw: str) -> str:
    """Normalise *raw* and reject anything that is not ``+233`` plus 9 digits.

    Raises
    ------
    InvalidPhoneNumberError
        If the normalised number is not dialable.
    """
    phone = normalize_phone(raw)
    if not is_valid_phone(phone):
        raise InvalidPhoneNumberError(
            f"Invalid phone number: {raw!r}. "
            "Expected 0XXXXXXXXX, 233XXXXXXXXX or +233XXXXXXXXX."
        )
    return phone


def mask_phone(phone: str) -> str:
    """Hide the middle digits of a number for logs (``+233****3456``)."""
    if len(phone) <= 8:
        return phone
    return f"{phone[:4]}****{phone[-4:]}"
