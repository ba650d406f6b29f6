#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Money is persisted as integer minor units; Decimal is used only at the edges
(configuration, fee percentages, display).
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

logger = logging.getLogger(__name__)

getcontext().prec = 28

Numeric = Union[str, int, Decimal]


class MonetaryDecimal:
    """Conversions between major-unit Decimals and integer minor units"""

    DEFAULT_EXPONENT = 2
    # Currencies without a minor unit
    ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW"})

    @classmethod
    def exponent_for(cls, currency: str) -> int:
        if currency and currency.upper() in cls.ZERO_DECIMAL_CURRENCIES:
            return 0
        return cls.DEFAULT_EXPONENT

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Convert to Decimal, refusing floats so binary rounding never leaks in"""
        if isinstance(value, Decimal):
            return value
        if isinstance(value, float):
            raise TypeError(f"Float amounts are not accepted ({context}): {value!r}")
        try:
            return Decimal(str(value))
        except InvalidOperation as e:
            raise ValueError(f"Invalid monetary value {value!r} in context {context}") from e

    @classmethod
    def to_minor_units(cls, amount: Numeric, currency: str) -> int:
        """Convert a major-unit amount (e.g. 499.99 INR) to minor units (49999)"""
        decimal_amount = cls.to_decimal(amount, f"to_minor:{currency}")
        scale = Decimal(10) ** cls.exponent_for(currency)
        return int((decimal_amount * scale).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def from_minor_units(cls, amount: int, currency: str) -> Decimal:
        exponent = cls.exponent_for(currency)
        quantum = Decimal(1).scaleb(-exponent)
        return (Decimal(int(amount)) / (Decimal(10) ** exponent)).quantize(quantum)

    @classmethod
    def percentage_of(cls, amount: int, percentage: Numeric) -> int:
        """Percentage of a minor-unit amount, rounded half up to a whole minor unit"""
        pct = cls.to_decimal(percentage, "percentage")
        result = Decimal(int(amount)) * pct / Decimal(100)
        return int(result.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @classmethod
    def format_amount(cls, amount: int, currency: str) -> str:
        """Format minor units for messages, e.g. ``INR 900.00``"""
        return f"{currency.upper()} {cls.from_minor_units(amount, currency)}"

    @classmethod
    def validate_positive(cls, amount: int, context: str = "amount") -> int:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TypeError(f"{context} must be an integer number of minor units, got {amount!r}")
        if amount <= 0:
            raise ValueError(f"{context} must be positive, got {amount}")
        return amount


def to_minor_units(amount: Numeric, currency: str) -> int:
    return MonetaryDecimal.to_minor_units(amount, currency)


def from_minor_units(amount: int, currency: str) -> Decimal:
    return MonetaryDecimal.from_minor_units(amount, currency)


def percentage_of(amount: int, percentage: Numeric) -> int:
    return MonetaryDecimal.percentage_of(amount, percentage)


def format_amount(amount: int, currency: str) -> str:
    return MonetaryDecimal.format_amount(amount, currency)


__all__ = [
    "MonetaryDecimal",
    "to_minor_units",
    "from_minor_units",
    "percentage_of",
    "format_amount",
]
