"""
Centralized Decimal utilities for reimbursement amounts.

All monetary values MUST use Decimal, never float.
Import from this module for consistent behavior across the codebase.

Example usage:
    from decimal_utils import AMOUNT_TOLERANCE, ZERO, to_decimal, amounts_differ

    amount = to_decimal("123.45")
    total = ZERO
    if amounts_differ(stored, total):
        ...
"""

import json
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

# Single source of truth for currency precision
TWO_PLACES = Decimal(10) ** -2
ZERO = Decimal("0")

# Stored totals within one minor unit of the ledger total are considered equal
AMOUNT_TOLERANCE = Decimal("0.01")


def to_decimal(value: Any) -> Decimal:
    """
    Convert a numeric value to Decimal without rounding.

    Converts via string representation to avoid float precision issues.
    Anything that does not parse to a finite number becomes ZERO.

    Example:
        >>> to_decimal(100.005)
        Decimal('100.005')
        >>> to_decimal("abc")
        Decimal('0')
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ZERO
    return result if result.is_finite() else ZERO


def to_currency(value: str | int | float | Decimal) -> Decimal:
    """
    Convert any numeric value to properly quantized Decimal.

    Args:
        value: A numeric value (string, int, float, or Decimal)

    Returns:
        Decimal quantized to 2 decimal places using ROUND_HALF_UP

    Example:
        >>> to_currency("123.456")
        Decimal('123.46')
    """
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def amounts_differ(stored: Decimal, incoming: Decimal) -> bool:
    """True when two amounts differ by more than AMOUNT_TOLERANCE."""
    return abs(to_decimal(stored) - to_decimal(incoming)) > AMOUNT_TOLERANCE


class FinancialJsonEncoder(json.JSONEncoder):
    """
    JSON encoder that preserves Decimal precision via string serialization.

    Also handles datetime and date objects.

    Example:
        >>> json.dumps({"amount": Decimal("123.45")}, cls=FinancialJsonEncoder)
        '{"amount": "123.45"}'
    """

    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return str(o)  # String preserves exact precision
        if isinstance(o, (datetime, date)):
            return o.isoformat()
        return super().default(o)
