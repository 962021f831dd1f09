from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Union

from ...constants import PRODUCTS, SALES, SALES_PAGE_SIZE, SHOPS
from ...modules.payments.payment_utilities.calculations import (
    ZERO,
    line_total,
    quantities_total,
    to_money,
    to_quantity,
)
from ...utils.validators import require_date
from ..document_store import DocumentStore, Query, collection_path
from ..errors import DocumentNotFoundError, ValidationError
from .products_repo import Product

_log = logging.getLogger(__name__)

ProductsArg = Union[Iterable[Product], Mapping[str, object]]


@dataclass(frozen=True)
class SalesQuantities:
    """
    Per-product quantities of a consolidated sales entry.

    Two wire shapes exist:
      - "mapping": {"<productId>": "10", ...}            (current)
      - "legacy":  [{"productId": ..., "quantity": ..., "rate": ...}, ...]
    Both are normalized here at read time; writes always use the mapping shape.
    Only positive quantities are kept.
    """

    kind: str
    items: Dict[str, Decimal] = field(default_factory=dict)
    rates: Dict[str, Decimal] = field(default_factory=dict)  # legacy per-line rates

    @classmethod
    def from_wire(cls, raw) -> "SalesQuantities":
        if isinstance(raw, list):
            items: Dict[str, Decimal] = {}
            rates: Dict[str, Decimal] = {}
            for line in raw:
                if not isinstance(line, Mapping):
                    continue
                pid = line.get("productId") or line.get("id")
                qty = to_quantity(line.get("quantity"))
                if pid and qty > 0:
                    items[str(pid)] = qty
                    if line.get("rate") is not None:
                        rates[str(pid)] = to_money(line.get("rate"))
            return cls("legacy", items, rates)
        if isinstance(raw, Mapping):
            return cls.from_form(raw)
        if raw is not None:
            _log.warning("unrecognized quantities shape %r; treating as empty", type(raw).__name__)
        return cls("mapping")

    @classmethod
    def from_form(cls, quantities: Mapping[str, object]) -> "SalesQuantities":
        items = {}
        for pid, qty in (quantities or {}).items():
            q = to_quantity(qty)
            if q > 0:
                items[str(pid)] = q
        return cls("mapping", items)

    def to_wire(self) -> Dict[str, str]:
        return {pid: str(qty) for pid, qty in self.items.items()}

    def legacy_total(self, fallback_rate=None) -> Decimal:
        """Σ quantity × rate using stored per-line rates, else a single entry-level rate."""
        total = ZERO
        for pid, qty in self.items.items():
            rate = self.rates.get(pid, fallback_rate)
            if rate is not None:
                total += line_total(qty, rate)
        return to_money(total)

    def __bool__(self) -> bool:
        return bool(self.items)


@dataclass
class SalesEntry:
    id: str
    date: str
    quantities: SalesQuantities
    total: Decimal
    user_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    product_name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.product_name or f"Sales Entry - {self.date or 'Unknown'}"

    @classmethod
    def from_document(cls, doc: dict) -> "SalesEntry":
        quantities = SalesQuantities.from_wire(doc.get("quantities"))
        try:
            total = to_money(doc.get("total"), default=None)
        except ValueError:
            # entries written before totals were stored
            total = quantities.legacy_total(fallback_rate=doc.get("rate"))
        return cls(
            id=doc["id"],
            date=doc.get("date") or "",
            quantities=quantities,
            total=total,
            user_id=doc.get("userId"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
            product_name=doc.get("productName"),
        )

    def to_document(self) -> dict:
        doc = {
            "date": self.date,
            "quantities": self.quantities.to_wire(),
            "total": self.total,
            "userId": self.user_id,
            "createdAt": self.created_at,
        }
        if self.updated_at:
            doc["updatedAt"] = self.updated_at
        return doc


class SalesRepo:
    """
    Sales ledger of one shop.

    Key behavior:
      - One consolidated entry per save: {date, quantities, total, userId, createdAt}.
      - `total` is computed from product rates at call time and stored; it is
        never recomputed from current rates on read.
      - Editing a sale does NOT touch an existing payment record; the payment
        keeps its saleTotal snapshot until SalePaymentsRepo.resync_payment().
      - Deleting a sale does not delete its payment (see
        SalePaymentsRepo.delete_reconciled_entry for the full delete).
      - Optional per-product breakdown lines live under
        products/<productId>/sales and follow the consolidated entry.
    """

    def __init__(self, store: DocumentStore, shop_id: str, user_id: Optional[str] = None):
        self.store = store
        self.shop_id = shop_id
        self.user_id = user_id
        self.collection = collection_path(SHOPS, shop_id, SALES)

    def _breakdown_collection(self, product_id: str) -> str:
        return collection_path(SHOPS, self.shop_id, PRODUCTS, product_id, SALES)

    def page_query(self, page_size: int = SALES_PAGE_SIZE) -> Query:
        q = Query(self.collection, order_by="date", direction="desc", page_size=page_size)
        return q.where("userId", self.user_id) if self.user_id is not None else q

    # ---------------------------------------------------------------------
    # Pure helpers
    # ---------------------------------------------------------------------
    @staticmethod
    def _rates(products: ProductsArg) -> Dict[str, Decimal]:
        if isinstance(products, Mapping):
            return {str(pid): to_money(rate) for pid, rate in products.items()}
        return {p.id: to_money(p.rate) for p in products}

    @staticmethod
    def compute_total(quantities: Mapping[str, object], products: ProductsArg) -> Decimal:
        """
        total = Σ quantity_p × rate_p over products present in `quantities`,
        using the rates passed in (i.e. the rates at call time).
        Empty/zero quantities and unknown products contribute nothing.
        """
        q = SalesQuantities.from_form(quantities)
        return quantities_total(q.items, SalesRepo._rates(products))

    def _prepare(self, date, quantities, products):
        date_s = require_date(date)
        q = SalesQuantities.from_form(quantities)
        rates = self._rates(products)
        unknown = [pid for pid in q.items if pid not in rates]
        if unknown:
            _log.warning("ignoring quantities for unknown products %s", ", ".join(unknown))
            q = SalesQuantities("mapping", {pid: v for pid, v in q.items.items() if pid in rates})
        if not q:
            raise ValidationError("quantities", "Please enter at least one product quantity")
        return date_s, q, rates, quantities_total(q.items, rates)

    # ---------------------------------------------------------------------
    # READ
    # ---------------------------------------------------------------------
    def get_sale(self, sale_id: str) -> SalesEntry | None:
        doc = self.store.get_one(self.collection, sale_id)
        return SalesEntry.from_document(doc) if doc else None

    def list_sales(self) -> list[SalesEntry]:
        return [SalesEntry.from_document(d) for d in self.store.query(self.page_query().unpaginated()).docs]

    def list_product_sales(self, product_id: str) -> list[dict]:
        """Per-product breakdown lines, newest first."""
        return self.store.query(Query(self._breakdown_collection(product_id))).docs

    # ---------------------------------------------------------------------
    # WRITE
    # ---------------------------------------------------------------------
    def _write_breakdown(self, sale_id: str, date_s: str, q: SalesQuantities,
                         rates: Dict[str, Decimal], names: Dict[str, str], now: str) -> None:
        for pid, qty in q.items.items():
            self.store.create(self._breakdown_collection(pid), {
                "saleId": sale_id,
                "date": date_s,
                "quantity": str(qty),
                "rate": rates[pid],
                "total": line_total(qty, rates[pid]),
                "productName": names.get(pid, ""),
                "userId": self.user_id,
                "createdAt": now,
            })

    def _delete_breakdown(self, sale_id: str, product_ids: Iterable[str]) -> None:
        for pid in product_ids:
            coll = self._breakdown_collection(pid)
            for line in self.store.find(coll, [("saleId", sale_id)]):
                self.store.delete(coll, line["id"])

    @staticmethod
    def _names(products: ProductsArg) -> Dict[str, str]:
        if isinstance(products, Mapping):
            return {}
        return {p.id: p.name for p in products}

    def create_sale(self, date, quantities: Mapping[str, object], products: ProductsArg,
                    *, record_breakdown: bool = True) -> str:
        """
        Create a consolidated sales entry and return its id.
        Raises ValidationError when the date is invalid or no quantity is positive.
        """
        date_s, q, rates, total = self._prepare(date, quantities, products)
        now = self.store.now_iso()
        with self.store.transaction():
            sale_id = self.store.create(self.collection, {
                "date": date_s,
                "quantities": q.to_wire(),
                "total": total,
                "userId": self.user_id,
                "createdAt": now,
            })
            if record_breakdown:
                self._write_breakdown(sale_id, date_s, q, rates, self._names(products), now)
        _log.info("sale %s created for %s (total=%s)", sale_id, date_s, total)
        return sale_id

    def update_sale(self, sale_id: str, date, quantities: Mapping[str, object],
                    products: ProductsArg) -> Decimal:
        """
        Recompute the total with the given rates and overwrite the entry.
        Linked payment records keep their old snapshot. Returns the new total.
        """
        date_s, q, rates, total = self._prepare(date, quantities, products)
        now = self.store.now_iso()
        with self.store.transaction():
            existing = self.store.get_one(self.collection, sale_id)
            if existing is None:
                raise DocumentNotFoundError(self.collection, sale_id)
            old_q = SalesQuantities.from_wire(existing.get("quantities"))
            self.store.update(self.collection, sale_id, {
                "date": date_s,
                "quantities": q.to_wire(),
                "total": total,
                "updatedAt": now,
            })
            had_breakdown = any(
                self.store.find(self._breakdown_collection(pid), [("saleId", sale_id)])
                for pid in old_q.items
            )
            if had_breakdown:
                self._delete_breakdown(sale_id, old_q.items)
                self._write_breakdown(sale_id, date_s, q, rates, self._names(products), now)
        _log.info("sale %s updated (total=%s)", sale_id, total)
        return total

    def delete_sale(self, sale_id: str) -> bool:
        """Remove the entry (and its breakdown lines). Payment records are left alone."""
        with self.store.transaction():
            existing = self.store.get_one(self.collection, sale_id)
            if existing is None:
                return False
            self._delete_breakdown(sale_id, SalesQuantities.from_wire(existing.get("quantities")).items)
            self.store.delete(self.collection, sale_id)
        _log.info("sale %s deleted", sale_id)
        return True
