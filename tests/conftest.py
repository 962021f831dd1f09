# record_track/tests/conftest.py
# ---------------------------------------------------------------------
# Ground rules:
# - pytest-qt owns QApplication (use qapp/qtbot fixtures)
# - Every test gets its own file-backed store under tmp_path
# - One shop ("Test Shop", totalEarnings 0) with one product ("Milk", rate 50)
# - Repo fixtures are bound to that shop
# - Silence benign Qt signal warnings
# ---------------------------------------------------------------------

from __future__ import annotations

import os
import re

import pytest

# headless runs (CI) have no display
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from PySide6 import QtCore

from record_track.database import get_store
from record_track.database.repositories import (
    BalanceRepo,
    ProductsRepo,
    SalePaymentsRepo,
    SalesRepo,
    ShopsRepo,
)


# ---------- Qt: let pytest-qt own the app ----------
@pytest.fixture(scope="session")
def app(qapp):  # alias to match code that expects an `app` fixture
    return qapp


# ---------- Silence benign Qt warnings ----------
_BENIGN_QT_PATTERNS = [
    r"^QObject::connect: .* already connected",
    r"^QObject::disconnect: Unexpected null parameter",
    r"^QBasicTimer::stop: Failed\. Platform timer not running\.",
]

@pytest.fixture(autouse=True, scope="session")
def _silence_benign_qt():
    """Filter common harmless Qt messages during tests."""
    original = QtCore.qInstallMessageHandler(None)
    rx = [re.compile(p) for p in _BENIGN_QT_PATTERNS]

    def handler(msg_type, context, message):
        text = str(message)
        for r in rx:
            if r.search(text):
                return
        QtCore.qInstallMessageHandler(None)
        try:
            QtCore.qDebug(message)
        finally:
            QtCore.qInstallMessageHandler(handler)

    QtCore.qInstallMessageHandler(handler)
    try:
        yield
    finally:
        QtCore.qInstallMessageHandler(original)


# ---------- Store per test ----------
@pytest.fixture()
def db_path(tmp_path):
    return tmp_path / "record_track.db"


@pytest.fixture()
def store(db_path):
    s = get_store(db_path)
    try:
        yield s
    finally:
        s.close()


# ---------- Shop + product ----------
@pytest.fixture()
def shop_id(store) -> str:
    return ShopsRepo(store).create_shop("Test Shop")


@pytest.fixture()
def products_repo(store, shop_id) -> ProductsRepo:
    return ProductsRepo(store, shop_id)


@pytest.fixture()
def milk(products_repo):
    pid = products_repo.create_product("Milk", 50)
    return products_repo.get_product(pid)


@pytest.fixture()
def products(products_repo, milk):
    return products_repo.list_products()


# ---------- Repos ----------
@pytest.fixture()
def sales_repo(store, shop_id) -> SalesRepo:
    return SalesRepo(store, shop_id)


@pytest.fixture()
def payments_repo(store, shop_id) -> SalePaymentsRepo:
    return SalePaymentsRepo(store, shop_id)


@pytest.fixture()
def balance_repo(store, shop_id) -> BalanceRepo:
    return BalanceRepo(store, shop_id)


@pytest.fixture()
def milk_sale(sales_repo, milk, products) -> str:
    """2024-01-01, 10 × Milk @ 50 → total 500."""
    return sales_repo.create_sale("2024-01-01", {milk.id: 10}, products)
