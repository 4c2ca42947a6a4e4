"""
NFC-e access key helpers.

An access key is 44 digits; the last one is a modulo-11 check digit computed
over the first 43 with weights 2..9 cycling from the rightmost digit.
"""

from __future__ import annotations

import re

ACCESS_KEY_LENGTH = 44

_NON_DIGITS = re.compile(r"\D")


def normalize_access_key(key: str) -> str:
    """Strip spaces, dots, dashes and anything else that is not a digit."""
    return _NON_DIGITS.sub("", key or "")


def check_digit(first43: str) -> int:
    """Compute the check digit for the first 43 digits of a key."""
    total = 0
    weight = 2
    for ch in reversed(first43):
        total += int(ch) * weight
        weight = 2 if weight == 9 else weight + 1

    remainder = total % 11
    if remainder in (0, 1):
        return 0
    return 11 - remainder


def is_valid_access_key(key: str) -> bool:
    """Validate length, digits, repeated-digit keys and the check digit.

    Callers must normalize first; formatted keys are rejected as-is.
    """
    if len(key) != ACCESS_KEY_LENGTH or not key.isascii() or not key.isdigit():
        return False
    # "000...0" passes the arithmetic but is never issued.
    if len(set(key)) == 1:
        return False
    return check_digit(key[:-1]) == int(key[-1])
