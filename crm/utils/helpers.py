"""Shared parsing helpers for request payloads.

parse_date:     lenient, returns None on bad input (query-string filters)
parse_date_input: strict, raises ValueError on bad input (service payloads)
parse_decimal:  strict money parsing, raises ValueError on bad input
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENTS = Decimal("0.01")


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input.
    """
    try:
        return parse_date_input(value)
    except ValueError:
        return None


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, YYYY-MM-DDTHH:MM:SS, DD.MM.YYYY, date objects.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(text, "%d.%m.%Y").date()
    except ValueError as exc:
        raise ValueError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
        ) from exc


def parse_decimal(value):
    """Parse a money value to a two-place Decimal.

    Returns None for None/"". Raises ValueError for anything that is not a
    finite number. Floats go through ``str`` so 0.1 stays 0.10.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"Not a number: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)
