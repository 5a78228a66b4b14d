"""E.164 normalization for US phone numbers.

Use before storing or looking up any phone number (business line,
forwarding number, trial claims, callers).
"""

import re

US_COUNTRY_CODE = "1"

_NON_DIGITS = re.compile(r"\D")


def normalize_e164(value: str | None) -> str | None:
    """Normalize a phone string to E.164 (e.g. ``+14155551234``).

    Accepts digits, spaces, dashes, parentheses and a leading ``+`` or ``1``.
    Returns None when the input is empty or not plausibly a US number.
    """
    if not value or not isinstance(value, str):
        return None
    digits = _NON_DIGITS.sub("", value)
    if len(digits) == 10 and not digits.startswith("0"):
        return f"+{US_COUNTRY_CODE}{digits}"
    if len(digits) == 11 and digits.startswith(US_COUNTRY_CODE):
        return f"+{digits}"
    if len(digits) > 11 and digits.startswith(US_COUNTRY_CODE):
        return f"+{digits[:11]}"
    if len(digits) >= 10:
        return f"+{US_COUNTRY_CODE}{digits[-10:]}"
    return None


def is_valid_e164(value: str | None) -> bool:
    return normalize_e164(value) is not None
