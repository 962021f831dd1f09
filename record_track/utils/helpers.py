# utils/helpers.py
from datetime import date
from decimal import Decimal, InvalidOperation
import logging
from typing import Union, Optional

from ..constants import CURRENCY_SYMBOL

NumberLike = Union[Decimal, float, int, str]

_log = logging.getLogger(__name__)


def today_str() -> str:
    """Return today's date as ISO string (YYYY-MM-DD)."""
    return date.today().isoformat()


def fmt_money(
    v: NumberLike,
    places: int = 2,
    *,
    strict: bool = False,
    sentinel: Optional[str] = None,
) -> str:
    """
    Format a number as money with thousands separators and a fixed number of decimals.

    Behavior on parse failure:
      - By default (strict=False, sentinel=None), returns str(v).
      - If `sentinel` is provided (e.g., "N/A"), returns that sentinel instead.
      - If `strict=True`, raises ValueError on parse failures.
    """
    try:
        x = v if isinstance(v, Decimal) else Decimal(str(v))
        if not x.is_finite():
            raise InvalidOperation(v)
    except (InvalidOperation, ValueError) as e:
        _log.debug("fmt_money: failed to parse %r as a number: %s", v, e)
        if strict:
            raise ValueError(f"Could not parse {v!r} as a number.") from e
        return str(sentinel) if sentinel is not None else str(v)
    return f"{x:,.{places}f}"


def fmt_due(v: NumberLike) -> str:
    """
    Due amounts are shown unsigned with the currency symbol; a negative due is
    money still owed to the shop and gets an '(Outstanding)' suffix.
    """
    try:
        x = v if isinstance(v, Decimal) else Decimal(str(v))
    except (InvalidOperation, ValueError):
        return str(v)
    text = f"{CURRENCY_SYMBOL} {fmt_money(abs(x))}"
    return f"{text} (Outstanding)" if x < 0 else text
