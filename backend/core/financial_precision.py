"""
BILLING CORE - DECIMAL PRECISION & MONEY UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places, ROUND_HALF_UP)
2. Safe money arithmetic on mixed float/int/str/Decimal128 input
3. Value validation (positive / non-negative amounts)
4. Draft line amount formula (quantity x rate plus tax)

Rounding happens at calculation boundaries only.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
from bson import Decimal128
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0.00')

Numeric = Union[float, int, str, Decimal, Decimal128]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be interpreted as money"""
    pass


class NegativeValueError(Exception):
    """Raised when a money value is below its allowed floor"""
    def __init__(self, field_name: str, value, message: str):
        self.field_name = field_name
        self.value = value
        super().__init__(message)


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    None is treated as zero (missing money fields on stored documents).
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    if isinstance(value, (int, float)):
        # Via string to avoid binary float artefacts
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise FinancialPrecisionError(f"Invalid numeric string: {value!r}")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Numeric) -> Decimal:
    """Quantize to 2 decimal places using ROUND_HALF_UP."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Numeric) -> float:
    """Rounded float for JSON responses."""
    return float(round_financial(value))


def validate_non_negative(value: Numeric, field_name: str) -> None:
    """Raise NegativeValueError if value < 0."""
    if to_decimal(value) < Decimal('0'):
        raise NegativeValueError(
            field_name, value,
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Numeric, field_name: str) -> None:
    """Raise NegativeValueError if value <= 0."""
    if to_decimal(value) <= Decimal('0'):
        raise NegativeValueError(
            field_name, value,
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_multiply(a: Numeric, b: Numeric) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def safe_subtract(a: Numeric, b: Numeric) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def calculate_percentage(amount: Numeric, percentage: Numeric) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 18) = 180
    """
    return to_decimal(amount) * to_decimal(percentage) / Decimal('100')


def calculate_line_amount(
    quantity: Numeric,
    rate: Numeric,
    tax_percent: Numeric
) -> Decimal:
    """
    Amount of a draft billing line.

    LOCKED FORMULA:
    - amount = round(quantity * rate * (1 + tax_percent / 100), 2)

    Negative or zero results are returned as-is; callers flag them.
    """
    base = safe_multiply(quantity, rate)
    tax = calculate_percentage(base, tax_percent)
    return round_financial(safe_add(base, tax))
