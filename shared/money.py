"""
Minor-unit conversion for processor amounts.
"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)

TWO_PLACES = Decimal("0.01")


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def quantize_amount(amount: Decimal | str | int) -> Decimal:
    """Normalize to a two-decimal Decimal; floats are rejected."""
    if isinstance(amount, float):
        raise TypeError("monetary amounts must not be floats")
    return Decimal(amount).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def fits_minor_unit(amount: Decimal | str | int, currency: str) -> bool:
    """True when the amount has no digits below the currency's minor unit."""
    value = quantize_amount(amount).scaleb(currency_exponent(currency))
    return value == value.to_integral_value()


def to_minor(amount: Decimal | str | int, currency: str) -> int:
    """49.99 USD -> 4999; 500 JPY -> 500; 500.50 JPY raises ValueError."""
    exponent = currency_exponent(currency)
    value = quantize_amount(amount).scaleb(exponent)
    if value != value.to_integral_value():
        raise ValueError(f"{amount} has a fractional part {currency.upper()} cannot carry")
    return int(value)


def from_minor(minor: int, currency: str) -> Decimal:
    """4999 USD -> Decimal('49.99')."""
    exponent = currency_exponent(currency)
    return quantize_amount(Decimal(int(minor)).scaleb(-exponent))
