from __future__ import annotations
import re

_NON_DIGITS = re.compile(r"\D")


def to_e164(phone_number: str) -> str:
    """
    Normalize a user-entered number to E.164. Numbers without a leading '+'
    are read as North American: 10 digits get a +1 prefix.

        "(555) 123-4567"  -> "+15551234567"
        "1 555 123 4567"  -> "+15551234567"
        "+44 20 7946 0958" -> "+442079460958"
    """
    raw = (phone_number or "").strip()
    digits = _NON_DIGITS.sub("", raw)
    if not digits:
        raise ValueError(f"Invalid phone number: {phone_number!r}")
    if raw.startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"
