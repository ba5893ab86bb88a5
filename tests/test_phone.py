import pytest

from dulu.errors import ValidationError
from dulu.services.phone import (
    MTN_MOMO_CMR,
    ORANGE_CMR,
    correspondent_for_phone,
    detect_correspondent,
    format_phone,
    is_valid_phone,
    resolve_correspondent,
    to_msisdn,
)


@pytest.mark.parametrize(
    "raw",
    ["690123456", "+237690123456", "237690123456", "+237 690 12 34 56", "690-123-456"],
)
def test_format_phone_normalizes(raw):
    assert format_phone(raw) == "+237690123456"


@pytest.mark.parametrize("raw", ["", "12345", "+23769012345678", "abc"])
def test_format_phone_rejects_bad_numbers(raw):
    with pytest.raises(ValidationError):
        format_phone(raw)


def test_is_valid_phone():
    assert is_valid_phone("+237690123456")
    assert not is_valid_phone("690123456")
    assert not is_valid_phone("+23769012345")


def test_to_msisdn_strips_plus():
    assert to_msisdn("690 12 34 56") == "237690123456"


@pytest.mark.parametrize(
    "phone, expected",
    [
        ("+237690123456", ORANGE_CMR),
        ("+237650123456", ORANGE_CMR),
        ("+237660123456", ORANGE_CMR),
        ("+237670123456", MTN_MOMO_CMR),
        ("+237680123456", MTN_MOMO_CMR),
        ("+237620123456", ORANGE_CMR),
    ],
)
def test_correspondent_for_phone(phone, expected):
    assert correspondent_for_phone(phone) == expected


def test_resolve_correspondent_explicit_and_unknown():
    assert resolve_correspondent("+237690123456", "mtn_momo_cmr") == MTN_MOMO_CMR
    assert resolve_correspondent("+237670123456", None) == MTN_MOMO_CMR
    with pytest.raises(ValidationError):
        resolve_correspondent("+237690123456", "AIRTEL_CMR")


def test_detect_correspondent_unknown_prefix():
    assert detect_correspondent("+237670123456") == MTN_MOMO_CMR
    assert detect_correspondent("+237620123456") is None
