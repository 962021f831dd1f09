# record_track/database/repositories/__init__.py
"""
Repository layer public API.

Usage:
    from record_track.database.repositories import (
        # Shops / balance
        ShopsRepo, Shop, BalanceRepo,
        # Products
        ProductsRepo, Product,
        # Sales
        SalesRepo, SalesEntry, SalesQuantities,
        # Payments
        SalePaymentsRepo, PaymentRecord,
    )
"""

# ---------------- Shops --------------------
from .shops_repo import ShopsRepo, Shop
from .balance_repo import BalanceRepo

# ---------------- Products -----------------
from .products_repo import ProductsRepo, Product

# ------------------ Sales ------------------
from .sales_repo import SalesRepo, SalesEntry, SalesQuantities

# ----------------- Payments ----------------
from .sale_payments_repo import SalePaymentsRepo, PaymentRecord, validate_payment_amounts

__all__ = [
    # shops_repo / balance_repo
    "ShopsRepo",
    "Shop",
    "BalanceRepo",
    # products_repo
    "ProductsRepo",
    "Product",
    # sales_repo
    "SalesRepo",
    "SalesEntry",
    "SalesQuantities",
    # sale_payments_repo
    "SalePaymentsRepo",
    "PaymentRecord",
    "validate_payment_amounts",
]
