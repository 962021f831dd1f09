"""
payment_utilities/calculations.py

Pure helpers for the payment ledger, the balance accumulator and the
reconciled view.

Do not import repos or open store connections here.
Only compute numbers; formatting belongs in utils.helpers / the UI.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Mapping

from ....constants import MONEY_PLACES

__all__ = [
    "ZERO",
    "to_money",
    "to_quantity",
    "due_amount",
    "due_delta",
    "unpaid_due",
    "line_total",
    "sum_money",
    "balance_label",
    "quantities_total",
]

ZERO = Decimal("0.00")
_QUANT = Decimal(1).scaleb(-MONEY_PLACES)


# -----------------------------
# Core utilities
# -----------------------------

def to_money(x, default: Decimal | None = ZERO) -> Decimal:
    """
    Coerce a wire/user value (str, int, float, Decimal, None) to a Decimal
    rounded half-up to MONEY_PLACES.

    Floats go through str() so 0.1 stays 0.10 rather than its binary expansion.
    Unparseable values return `default` (raise ValueError when default is None).
    """
    if isinstance(x, Decimal):
        val = x
    else:
        try:
            val = Decimal(str(x).strip()) if x is not None and not isinstance(x, bool) else None
        except (InvalidOperation, ValueError):
            val = None
    if val is None or not val.is_finite():
        if default is None:
            raise ValueError(f"Could not parse {x!r} as money.")
        return default
    q = val.quantize(_QUANT, rounding=ROUND_HALF_UP)
    return q if q else ZERO  # no "-0.00"


def to_quantity(x) -> Decimal:
    """Quantities are unrounded; empty, invalid or non-positive values count as 0."""
    if x is None or isinstance(x, bool):
        return Decimal(0)
    try:
        val = x if isinstance(x, Decimal) else Decimal(str(x).strip())
    except (InvalidOperation, ValueError):
        return Decimal(0)
    if not val.is_finite() or val <= 0:
        return Decimal(0)
    return val


# -----------------------------
# Ledger math
# -----------------------------

def due_amount(amount_received, expenses_num, sale_total) -> Decimal:
    """
    dueAmount = amountReceived + expensesNum - saleTotal

    Negative means money still owed to the shop; positive is a surplus.
    """
    return to_money(to_money(amount_received) + to_money(expenses_num) - to_money(sale_total))


def due_delta(new_due, old_due) -> Decimal:
    """Amount to add to totalEarnings when a payment's due changes."""
    return to_money(to_money(new_due) - to_money(old_due))


def unpaid_due(sale_total) -> Decimal:
    """A sale without a payment record owes its whole total."""
    return to_money(-to_money(sale_total))


def line_total(quantity, rate) -> Decimal:
    return to_money(to_quantity(quantity) * to_money(rate))


def sum_money(values: Iterable) -> Decimal:
    total = ZERO
    for v in values:
        total += to_money(v)
    return to_money(total)


def balance_label(total_earnings) -> str:
    return "Available Balance" if to_money(total_earnings) >= 0 else "Outstanding Amount"


def quantities_total(quantities: Mapping[str, object], rates: Mapping[str, object]) -> Decimal:
    """Σ quantity × rate over products that have both a positive quantity and a known rate."""
    total = ZERO
    for pid, qty in quantities.items():
        if pid in rates:
            total += line_total(qty, rates[pid])
    return to_money(total)
