"""
LEDGER CORE - DECIMAL PRECISION & FINANCIAL UTILITIES

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe financial calculations
3. Value validation (no negative amounts)
4. Tolerance comparison for balance checks
5. Payment status derivation

Rounding happens at calculation boundaries only.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

# Balances that differ by no more than one agora/cent are considered equal
BALANCE_TOLERANCE = Decimal('0.01')

PAYMENT_STATUS_UNPAID = "unpaid"
PAYMENT_STATUS_PARTIAL = "partial"
PAYMENT_STATUS_PAID = "paid"

Numeric = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be used as a financial amount"""
    pass


class NegativeValueError(FinancialPrecisionError):
    """Raised when a negative financial value is detected"""
    pass


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, bool):
        raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise FinancialPrecisionError(f"Not a number: {value!r}")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Numeric) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    This should be called ONLY at calculation boundaries.
    """
    decimal_value = to_decimal(value)
    return decimal_value.quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Numeric) -> float:
    """
    Convert back to float for document storage and report output.
    Rounds to 2 decimal places first.
    """
    return float(round_financial(value))


def is_number(value) -> bool:
    """True for real numeric values (bools and NaN excluded)"""
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, (int, float, Decimal)):
        return to_decimal(value).is_finite()
    return False


def validate_non_negative(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is not negative.
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value < Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Numeric, field_name: str) -> None:
    """
    Validate that a financial value is strictly positive (> 0).
    Raises NegativeValueError if validation fails.
    """
    decimal_value = to_decimal(value)
    if decimal_value <= Decimal('0'):
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_divide(numerator: Numeric, denominator: Numeric) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == Decimal('0'):
        return Decimal('0')
    return to_decimal(numerator) / denom


def safe_subtract(a: Numeric, b: Numeric) -> Decimal:
    """Safe subtraction preserving precision"""
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Numeric) -> Decimal:
    """Safe addition of multiple values"""
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def within_tolerance(a: Numeric, b: Numeric, tolerance: Decimal = BALANCE_TOLERANCE) -> bool:
    """True when |a - b| <= tolerance"""
    return abs(safe_subtract(a, b)) <= tolerance


def calculate_percentage_of(part: Numeric, whole: Numeric) -> Decimal:
    """
    part / whole * 100, or 0 when whole is 0.
    Example: calculate_percentage_of(4000, 10000) = 40
    """
    return safe_divide(part, whole) * Decimal('100')


def derive_payment_status(paid_amount: Numeric, amount: Numeric) -> str:
    """
    Deterministic payment status of an invoice.

    paid <= 0          -> unpaid
    0 < paid < amount  -> partial
    paid >= amount     -> paid
    """
    paid = round_financial(paid_amount)
    total = round_financial(amount)
    if paid <= Decimal('0'):
        return PAYMENT_STATUS_UNPAID
    if paid >= total:
        return PAYMENT_STATUS_PAID
    return PAYMENT_STATUS_PARTIAL
