from decimal import Decimal

import pytest

from shipledger.currency import (
    InvalidRateError,
    UnsupportedCurrencyError,
    convert_rmb_to_egp,
    convert_usd_to_rmb,
    normalize_payment_amounts,
    parse_amount,
    round_amount,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, 0.0),
        ("", 0.0),
        ("abc", 0.0),
        (float("inf"), 0.0),
        (float("nan"), 0.0),
        ("12.5", 12.5),
        (Decimal("7.15"), 7.15),
        (3, 3.0),
    ],
)
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected


def test_round_amount_is_half_up():
    assert round_amount(2.675) == 2.68
    assert round_amount(1.005) == 1.01
    assert round_amount(7.12345, 4) == 7.1235


def test_convert_rmb_to_egp():
    assert convert_rmb_to_egp(100, 7.1234) == 712.34


def test_convert_usd_to_rmb():
    assert convert_usd_to_rmb(50, 7.5) == 375


@pytest.mark.parametrize("rate", [0, -1, None, float("inf")])
def test_convert_rejects_bad_rate(rate):
    with pytest.raises(InvalidRateError):
        convert_rmb_to_egp(10, rate)


def test_normalize_rmb_payment():
    assert normalize_payment_amounts("RMB", 10, 7.5) == (75.0, 7.5)


def test_normalize_rmb_payment_needs_rate():
    with pytest.raises(InvalidRateError):
        normalize_payment_amounts("RMB", 10)


def test_normalize_egp_payment_has_no_rate():
    assert normalize_payment_amounts("EGP", 99.999, 7.5) == (100.0, None)


def test_normalize_unsupported_currency():
    with pytest.raises(UnsupportedCurrencyError):
        normalize_payment_amounts("USD", 10, 7.2)
