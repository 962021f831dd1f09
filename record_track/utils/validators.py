# utils/validators.py
from __future__ import annotations

from datetime import date
from decimal import Decimal, InvalidOperation

from ..database.errors import ValidationError


def non_empty(text: str) -> bool:
    """
    True if `text` is not None/empty after stripping whitespace.
    """
    return bool(text and str(text).strip())


# ---- Numeric parsing & validators ----

def try_parse_decimal(x):
    """
    Best-effort parse to a finite Decimal.

    Returns:
        (ok: bool, value: Decimal|None)

    ok == False means parsing failed (or the value is NaN/Infinity) and value is None.
    Booleans are rejected even though Python treats them as ints.
    """
    if x is None or isinstance(x, bool):
        return False, None
    try:
        val = x if isinstance(x, Decimal) else Decimal(str(x).strip())
    except (InvalidOperation, ValueError):
        return False, None
    if not val.is_finite():
        return False, None
    return True, val


def is_non_negative_number(x) -> bool:
    """
    True iff x parses to a finite number and value >= 0.
    """
    ok, val = try_parse_decimal(x)
    return bool(ok and val >= 0)


def is_strictly_positive_number(x) -> bool:
    """
    True iff x parses to a finite number and value > 0.
    """
    ok, val = try_parse_decimal(x)
    return bool(ok and val > 0)


# ---- Form field validators (raise ValidationError) ----

def require_amount(x, field: str, *, allow_zero: bool = False, label: str = "Amount") -> Decimal:
    """
    Parse a money field entered by the user.

    Raises ValidationError(field, ...) when the value is missing, not a number,
    not finite, negative, or zero while allow_zero is False.
    """
    if x is None or (isinstance(x, str) and not x.strip()):
        raise ValidationError(field, f"{label} is required")
    ok, val = try_parse_decimal(x)
    if not ok:
        raise ValidationError(field, f"{label} must be a valid number")
    if val < 0 or (val == 0 and not allow_zero):
        kind = "non-negative" if allow_zero else "positive"
        raise ValidationError(field, f"Please enter a valid {kind} {label.lower()}")
    return val


def require_date(x, field: str = "date") -> str:
    """
    Accept a date or an ISO 'YYYY-MM-DD' string; return the ISO string.
    """
    if isinstance(x, date):
        return x.isoformat()
    if not non_empty(x):
        raise ValidationError(field, "Please select a valid date")
    s = str(x).strip()
    try:
        return date.fromisoformat(s[:10]).isoformat()
    except ValueError:
        raise ValidationError(field, "Please select a valid date") from None


def require_text(x, field: str, label: str) -> str:
    if not non_empty(x):
        raise ValidationError(field, f"{label} cannot be empty.")
    return str(x).strip()
