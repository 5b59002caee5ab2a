"""Contact normalization used for matching inbound messages and intake submissions."""

import re
from typing import Optional


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize phone to E.164 format (+15551234567).

    Accepts:
    - 10 digits: 5551234567 → +15551234567
    - 11 digits starting with 1: 15551234567 → +15551234567
    - Any formatting: (555) 123-4567, 555.123.4567, +1 555 123 4567

    Args:
        phone: Raw phone input

    Returns:
        E.164 formatted phone, or None if empty or not a valid US number
    """
    if not phone:
        return None

    digits = re.sub(r"\D", "", str(phone))

    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"

    return None


def phone_digits(phone: Optional[str]) -> str:
    """Last 10 digits of a phone, the key used for fuzzy matching."""
    if not phone:
        return ""
    return re.sub(r"\D", "", str(phone))[-10:]


def phones_match(a: Optional[str], b: Optional[str]) -> bool:
    """
    Fuzzy phone comparison on the last 10 digits.

    Tolerates formatting differences and a missing or present country code.
    Numbers with fewer than 10 digits never match.
    """
    left = phone_digits(a)
    right = phone_digits(b)
    return len(left) == 10 and left == right


def normalize_email(email: Optional[str]) -> Optional[str]:
    """
    Normalize email to lowercase.

    Args:
        email: Raw email input

    Returns:
        Lowercased email or None if empty
    """
    if not email:
        return None
    cleaned = str(email).strip().lower()
    return cleaned or None


def normalize_name(name: Optional[str]) -> Optional[str]:
    """Collapse whitespace in a name. Returns None if empty."""
    if not name:
        return None
    cleaned = " ".join(str(name).split())
    return cleaned or None


def split_full_name(full_name: Optional[str]) -> tuple[str, str]:
    """
    Split a full name into (first, last).

    Everything after the first word is the last name:
    "Mary Ann Smith" → ("Mary", "Ann Smith"), "Cher" → ("Cher", "").
    """
    cleaned = normalize_name(full_name)
    if not cleaned:
        return "", ""
    first, _, rest = cleaned.partition(" ")
    return first, rest
