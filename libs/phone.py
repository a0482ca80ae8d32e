"""
Phone number canonicalisation helpers.

Numbers entered by hand or imported from a device address book arrive in all
sorts of shapes ("(555) 123-4567", "077 123 4567", "+1 555 123 4567"). Before
anything is stored or handed to an SMS gateway it is reduced to E.164-like
form with a small set of regional heuristics:

- a single leading "+" is kept, every other "+" is dropped
- 10 digits starting with 0 -> Sri Lankan number, "+94" + last 9 digits
- 11 digits starting with 1 -> North American number, "+" prefix
- 10 digits not starting with 0 -> North American number, "+1" prefix
- 9 digits starting with 7 -> Sri Lankan mobile without trunk prefix, "+94"
"""

import re
from typing import Iterable, List, Optional

_NON_DIAL_CHARS = re.compile(r"[^\d+]")
_NON_DIGITS = re.compile(r"\D")
_E164 = re.compile(r"^\+\d{10,15}$")


def clean_phone_number(phone_number: Optional[str]) -> str:
    """Reduce a raw phone number to canonical form (see module docstring)."""
    if not phone_number:
        return ""

    cleaned = _NON_DIAL_CHARS.sub("", phone_number.strip())
    if not cleaned:
        return ""

    if cleaned.startswith("+"):
        return "+" + cleaned[1:].replace("+", "")

    cleaned = cleaned.replace("+", "")
    if not cleaned:
        return ""

    if cleaned.startswith("0") and len(cleaned) == 10:
        return f"+94{cleaned[1:]}"
    if len(cleaned) == 11 and cleaned.startswith("1"):
        return f"+{cleaned}"
    if len(cleaned) == 10 and not cleaned.startswith("0"):
        return f"+1{cleaned}"
    if len(cleaned) == 9 and cleaned.startswith("7"):
        return f"+94{cleaned}"
    return cleaned


def is_valid_phone_number(phone_number: Optional[str]) -> bool:
    """True for canonical international numbers: '+' followed by 10-15 digits."""
    if not phone_number:
        return False
    return bool(_E164.match(phone_number))


def has_minimum_digits(phone_number: Optional[str], minimum: int = 10) -> bool:
    """Form-level check used when a user types a number in by hand."""
    if not phone_number:
        return False
    return len(_NON_DIGITS.sub("", phone_number)) >= minimum


def normalize_or_none(phone_number: Optional[str]) -> Optional[str]:
    cleaned = clean_phone_number(phone_number)
    return cleaned if is_valid_phone_number(cleaned) else None


def dedupe_numbers(phone_numbers: Iterable[Optional[str]]) -> List[str]:
    """Canonicalise, drop invalid numbers and keep first-seen order."""
    seen = set()
    result = []
    for raw in phone_numbers:
        number = normalize_or_none(raw)
        if number is None or number in seen:
            continue
        seen.add(number)
        result.append(number)
    return result
