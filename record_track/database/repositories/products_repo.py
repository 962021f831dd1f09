# record_track/database/repositories/products_repo.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ...constants import PRODUCTS, PRODUCTS_PAGE_SIZE, SHOPS
from ...modules.payments.payment_utilities.calculations import to_money
from ...utils.validators import require_amount, require_text
from ..document_store import DocumentStore, Query, collection_path


@dataclass
class Product:
    id: str
    name: str
    rate: Decimal
    created_at: Optional[str] = None

    @classmethod
    def from_document(cls, doc: dict) -> "Product":
        # rates were historically saved as form strings ("50"); to_money accepts both
        return cls(
            id=doc["id"],
            name=doc.get("name") or "",
            rate=to_money(doc.get("rate")),
            created_at=doc.get("createdAt"),
        )

    def to_document(self) -> dict:
        return {"name": self.name, "rate": self.rate, "createdAt": self.created_at}


class ProductsRepo:
    """
    Products of one shop. Rates are mutable; sales store their own totals, so a
    rate change never alters historical entries.
    """

    def __init__(self, store: DocumentStore, shop_id: str):
        self.store = store
        self.shop_id = shop_id
        self.collection = collection_path(SHOPS, shop_id, PRODUCTS)

    def page_query(self, page_size: int = PRODUCTS_PAGE_SIZE) -> Query:
        return Query(self.collection, order_by="createdAt", direction="desc", page_size=page_size)

    def list_products(self) -> list[Product]:
        return [Product.from_document(d) for d in self.store.query(self.page_query().unpaginated()).docs]

    def get_product(self, product_id: str) -> Product | None:
        doc = self.store.get_one(self.collection, product_id)
        return Product.from_document(doc) if doc else None

    def create_product(self, name: str, rate) -> str:
        name_n = require_text(name, "name", "Product name")
        rate_n = to_money(require_amount(rate, "rate", label="Product rate"))
        return self.store.create(self.collection, {
            "name": name_n,
            "rate": rate_n,
            "createdAt": self.store.now_iso(),
        })

    def update_product(self, product_id: str, name: str, rate) -> None:
        name_n = require_text(name, "name", "Product name")
        rate_n = to_money(require_amount(rate, "rate", label="Product rate"))
        self.store.update(self.collection, product_id, {
            "name": name_n,
            "rate": rate_n,
            "updatedAt": self.store.now_iso(),
        })

    def delete_product(self, product_id: str) -> bool:
        return self.store.delete(self.collection, product_id)
