"""Utility modules."""

from carepipeline.utils.normalization import (
    normalize_email,
    normalize_name,
    normalize_phone,
    phone_digits,
    phones_match,
    split_full_name,
)

__all__ = [
    "normalize_email",
    "normalize_name",
    "normalize_phone",
    "phone_digits",
    "phones_match",
    "split_full_name",
]
