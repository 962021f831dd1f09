from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ...constants import SHOPS
from ...modules.payments.payment_utilities.calculations import ZERO, to_money
from ...utils.validators import require_text
from ..document_store import DocumentStore, Query
from ..errors import DocumentNotFoundError


@dataclass
class Shop:
    id: str
    name: str
    total_earnings: Decimal
    user_id: Optional[str]
    created_at: Optional[str]

    @classmethod
    def from_document(cls, doc: dict) -> "Shop":
        return cls(
            id=doc["id"],
            name=doc.get("name") or "Unknown Shop",
            total_earnings=to_money(doc.get("totalEarnings")),
            user_id=doc.get("userId"),
            created_at=doc.get("createdAt"),
        )

    def to_document(self) -> dict:
        return {
            "name": self.name,
            "totalEarnings": self.total_earnings,
            "userId": self.user_id,
            "createdAt": self.created_at,
        }


class ShopsRepo:
    """Shops live in the root collection; each one owns the running totalEarnings balance."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def create_shop(self, name: str, user_id: Optional[str] = None) -> str:
        name_n = require_text(name, "name", "Shop name")
        return self.store.create(SHOPS, {
            "name": name_n,
            "userId": user_id,
            "totalEarnings": ZERO,
            "createdAt": self.store.now_iso(),
        })

    def get_shop(self, shop_id: str) -> Shop | None:
        doc = self.store.get_one(SHOPS, shop_id)
        return Shop.from_document(doc) if doc else None

    def list_shops(self, user_id: Optional[str] = None) -> list[Shop]:
        q = Query(SHOPS, order_by="createdAt", direction="asc")
        if user_id is not None:
            q = q.where("userId", user_id)
        return [Shop.from_document(d) for d in self.store.query(q).docs]

    def rename_shop(self, shop_id: str, name: str) -> None:
        name_n = require_text(name, "name", "Shop name")
        if self.store.get_one(SHOPS, shop_id) is None:
            raise DocumentNotFoundError(SHOPS, shop_id)
        self.store.update(SHOPS, shop_id, {"name": name_n, "updatedAt": self.store.now_iso()})
