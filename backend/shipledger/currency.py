import math
from decimal import Decimal, ROUND_HALF_UP

from .constants import Currency, MONEY_DIGITS


class UnsupportedCurrencyError(ValueError):
    pass


class InvalidRateError(ValueError):
    pass


def parse_amount(value) -> float:
    """None / blanks / garbage / inf -> 0.0. Accepts Decimal from Numeric columns."""
    if value is None:
        return 0.0
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0.0
    return parsed if math.isfinite(parsed) else 0.0


def round_amount(value: float, digits: int = MONEY_DIGITS) -> float:
    # half-up on the decimal repr: 2.675 -> 2.68
    quant = Decimal(1).scaleb(-digits)
    return float(Decimal(repr(float(value))).quantize(quant, rounding=ROUND_HALF_UP))


def _check_rate(amount: float, rate: float) -> None:
    if rate is None or not math.isfinite(amount) or not math.isfinite(rate) or rate <= 0:
        raise InvalidRateError("سعر الصرف غير صالح")


def convert_rmb_to_egp(amount_rmb: float, rate: float) -> float:
    _check_rate(amount_rmb, rate)
    return round_amount(amount_rmb * rate)


def convert_usd_to_rmb(amount_usd: float, rate: float) -> float:
    _check_rate(amount_usd, rate)
    return round_amount(amount_usd * rate)


def normalize_payment_amounts(
    currency: str,
    amount_original: float,
    exchange_rate_to_egp: float | None = None,
) -> tuple[float, float | None]:
    """Returns (amount_egp, exchange_rate_to_egp) for a payment.

    RMB payments need a positive rate; EGP payments carry no rate.
    """
    if currency == Currency.RMB:
        if not exchange_rate_to_egp or exchange_rate_to_egp <= 0:
            raise InvalidRateError("يجب توفير سعر صرف صحيح لليوان")
        return convert_rmb_to_egp(amount_original, exchange_rate_to_egp), exchange_rate_to_egp

    if currency == Currency.EGP:
        return round_amount(amount_original), None

    raise UnsupportedCurrencyError("عملة الدفع غير مدعومة")
