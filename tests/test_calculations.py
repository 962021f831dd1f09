from decimal import Decimal

import pytest

from record_track.modules.payments.payment_utilities.calculations import (
    ZERO,
    balance_label,
    due_amount,
    due_delta,
    line_total,
    quantities_total,
    sum_money,
    to_money,
    to_quantity,
    unpaid_due,
)


def test_to_money_parses_wire_values():
    assert to_money("50") == Decimal("50.00")
    assert to_money(0.1) == Decimal("0.10")
    assert to_money(Decimal("2.005")) == Decimal("2.01")   # half-up
    assert to_money(None) == ZERO
    assert to_money("abc") == ZERO
    assert to_money(True) == ZERO


def test_to_money_never_returns_negative_zero():
    assert str(to_money("-0.001")) == "0.00"


def test_to_money_raises_without_default():
    with pytest.raises(ValueError):
        to_money("not-a-number", default=None)
    with pytest.raises(ValueError):
        to_money(float("nan"), default=None)


def test_to_quantity_drops_invalid_and_non_positive():
    assert to_quantity("10") == Decimal("10")
    assert to_quantity("") == 0
    assert to_quantity(-3) == 0
    assert to_quantity("x") == 0
    assert to_quantity("2.5") == Decimal("2.5")


@pytest.mark.parametrize(
    "received, expenses, total, expected",
    [
        ("400", "50", "500", "-50.00"),
        ("600", "50", "500", "150.00"),
        ("0.10", "0.20", "0.30", "0.00"),
        ("1000.333", "0", "999.99", "0.34"),
    ],
)
def test_due_amount_is_exact_to_two_places(received, expenses, total, expected):
    assert due_amount(received, expenses, total) == Decimal(expected)


def test_due_delta_and_unpaid_due():
    assert due_delta(Decimal("150"), Decimal("-50")) == Decimal("200.00")
    assert unpaid_due("500") == Decimal("-500.00")
    assert unpaid_due(0) == ZERO


def test_line_and_quantities_total():
    assert line_total("10", "50") == Decimal("500.00")
    assert line_total("1.5", "3.33") == Decimal("5.00")   # 4.995 rounds half-up
    rates = {"milk": Decimal("50"), "curd": Decimal("30")}
    assert quantities_total({"milk": "10", "curd": "2", "ghost": "9"}, rates) == Decimal("560.00")


def test_sum_money_and_balance_label():
    assert sum_money(["-50.00", "150", None, "x"]) == Decimal("100.00")
    assert balance_label("0") == "Available Balance"
    assert balance_label("-0.01") == "Outstanding Amount"
