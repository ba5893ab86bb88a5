"""Cameroon mobile-money phone number helpers."""
from __future__ import annotations

import re

from dulu.errors import ValidationError

COUNTRY_CODE = "237"
PHONE_PATTERN = re.compile(r"^\+237[0-9]{9}$")

ORANGE_CMR = "ORANGE_CMR"
MTN_MOMO_CMR = "MTN_MOMO_CMR"

CORRESPONDENTS = {
    ORANGE_CMR: "Orange Money",
    MTN_MOMO_CMR: "MTN Mobile Money",
}

_ORANGE_PREFIXES = ("69", "65", "66")
_MTN_PREFIXES = ("67", "68")


def _local_digits(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith(COUNTRY_CODE):
        digits = digits[len(COUNTRY_CODE):]
    return digits


def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(phone or ""))


def format_phone(phone: str) -> str:
    """Return ``+237XXXXXXXXX`` or raise :class:`ValidationError`."""
    digits = _local_digits(phone)
    if len(digits) != 9:
        raise ValidationError("Invalid phone number format. Must be +237XXXXXXXXX")
    return f"+{COUNTRY_CODE}{digits}"


def to_msisdn(phone: str) -> str:
    """Provider form of a formatted number: digits only, no ``+``."""
    return format_phone(phone).lstrip("+")


def detect_correspondent(phone: str) -> str | None:
    """Operator owning the number prefix, ``None`` for an unknown prefix."""
    number = _local_digits(phone)
    if number.startswith(_ORANGE_PREFIXES):
        return ORANGE_CMR
    if number.startswith(_MTN_PREFIXES):
        return MTN_MOMO_CMR
    return None


def correspondent_for_phone(phone: str) -> str:
    return detect_correspondent(phone) or ORANGE_CMR


def resolve_correspondent(phone: str, correspondent: str | None) -> str:
    """Validate an explicit operator or detect it from the number prefix."""
    if not correspondent:
        return correspondent_for_phone(phone)
    code = correspondent.strip().upper()
    if code not in CORRESPONDENTS:
        raise ValidationError(f"Unsupported correspondent: {correspondent}")
    return code
