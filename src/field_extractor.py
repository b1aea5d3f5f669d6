"""
Normalize ledger cell values into plain strings and Decimals.

Bitable returns the same column in several shapes depending on the column
type and how the row was entered:

    "Stephen"                                   plain scalar
    {"type": 1, "value": [{"text": "Stephen"}]}  formula / lookup wrapper
    [{"text": "Stephen", "type": "text"}]        rich text segments
    [{"name": "Stephen", "id": "ou_..."}]        person / option list
    {"text": "Stephen"} or {"name": "..."}       single tagged object

Unrecognized shapes degrade to "" (or zero); nothing here raises.
"""

from decimal import Decimal
from typing import Any

from decimal_utils import ZERO, to_decimal


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, Decimal)) and not isinstance(
        value, bool
    )


def _text_of(element: Any) -> str:
    if _is_scalar(element):
        return str(element)
    if isinstance(element, dict):
        for key in ("text", "name"):
            if element.get(key):
                return str(element[key])
    return ""


def extract_value(field: Any) -> str:
    """Resolve a ledger cell to a plain string, or "" when unresolvable."""
    if field is None or field == "" or isinstance(field, bool):
        return ""
    if _is_scalar(field):
        return str(field)

    if isinstance(field, dict):
        wrapped = field.get("value")
        if isinstance(wrapped, list) and wrapped:
            first = wrapped[0]
            if isinstance(first, dict) and first.get("text"):
                return str(first["text"])
            if _is_scalar(first):
                return str(first)
        return _text_of(field)

    if isinstance(field, list):
        if not field:
            return ""
        return _text_of(field[0])

    return ""


def extract_number(field: Any) -> Decimal:
    """Resolve a ledger cell to a Decimal, or ZERO when absent or unparseable."""
    if field is None or isinstance(field, bool):
        return ZERO
    if isinstance(field, (int, float, Decimal)):
        return to_decimal(field)
    text = extract_value(field)
    if not text:
        return ZERO
    return to_decimal(text.replace(",", ""))
