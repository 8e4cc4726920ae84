"""Normalization and checksum rules for prospect and client input."""

from __future__ import annotations

import re

_NON_DIGITS_RE = re.compile(r"\D")
_FIRST_CHECK_WEIGHTS = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_SECOND_CHECK_WEIGHTS = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
MIN_PHONE_DIGITS = 10


def only_digits(value: str) -> str:
    return _NON_DIGITS_RE.sub("", value)


def _check_digit(digits: str, weights: tuple[int, ...]) -> int:
    remainder = sum(int(digit) * weight for digit, weight in zip(digits, weights)) % 11
    return 0 if remainder < 2 else 11 - remainder


def is_valid_cnpj(value: str) -> bool:
    """Validate a Brazilian company tax ID (CNPJ), formatted or bare."""

    digits = only_digits(value)
    if len(digits) != 14 or len(set(digits)) == 1:
        return False
    if _check_digit(digits[:12], _FIRST_CHECK_WEIGHTS) != int(digits[12]):
        return False
    return _check_digit(digits[:13], _SECOND_CHECK_WEIGHTS) == int(digits[13])


def normalize_cnpj(value: str) -> str:
    """Return the 14 bare digits of a valid CNPJ or raise ``ValueError``."""

    if not is_valid_cnpj(value):
        raise ValueError("tax_id must be a valid 14-digit CNPJ")
    return only_digits(value)


def format_cnpj(value: str) -> str:
    digits = only_digits(value)
    if len(digits) != 14:
        return value
    return f"{digits[:2]}.{digits[2:5]}.{digits[5:8]}/{digits[8:12]}-{digits[12:]}"


def normalize_phone(value: str) -> str:
    stripped = value.strip()
    digits = only_digits(stripped)
    if len(digits) < MIN_PHONE_DIGITS:
        raise ValueError(f"phone must contain at least {MIN_PHONE_DIGITS} digits")
    return f"+{digits}" if stripped.startswith("+") else digits


def normalize_email(value: str) -> str:
    return value.strip().lower()
