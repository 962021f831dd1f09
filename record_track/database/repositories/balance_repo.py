from __future__ import annotations

import logging
from decimal import Decimal

from ...constants import PAYMENTS, SHOPS
from ...modules.payments.payment_utilities.calculations import sum_money, to_money
from ..document_store import DocumentStore, Query, collection_path
from ..errors import DocumentNotFoundError

_log = logging.getLogger(__name__)


class BalanceRepo:
    """
    Running balance ("total earnings") of one shop.

    Invariant at any quiescent point:
        shops/<id>.totalEarnings == Σ dueAmount over shops/<id>/payments
    as long as every delta went through apply() exactly once. Deleting a
    payment record intentionally does not reverse its contribution, so after
    deletions the invariant no longer holds by design; recompute() is the
    explicit repair pass for when a full re-derivation is wanted.
    """

    FIELD = "totalEarnings"

    def __init__(self, store: DocumentStore, shop_id: str):
        self.store = store
        self.shop_id = shop_id
        self.payments_collection = collection_path(SHOPS, shop_id, PAYMENTS)

    def get_total_earnings(self) -> Decimal:
        doc = self.store.get_one(SHOPS, self.shop_id)
        if doc is None:
            raise DocumentNotFoundError(SHOPS, self.shop_id)
        return to_money(doc.get(self.FIELD))

    def apply(self, delta) -> Decimal:
        """
        Add `delta` to totalEarnings atomically and return the new balance.
        When called inside a store transaction it commits (or rolls back) with it.
        """
        delta = to_money(delta)
        new_total = to_money(self.store.increment(SHOPS, self.shop_id, self.FIELD, delta))
        _log.info("shop %s balance %+.2f -> %s", self.shop_id, delta, new_total)
        return new_total

    def sum_due_amounts(self) -> Decimal:
        docs = self.store.query(Query(self.payments_collection)).docs
        return sum_money(d.get("dueAmount") for d in docs)

    def drift(self) -> Decimal:
        """Stored balance minus the balance derived from payment history (no writes)."""
        return to_money(self.get_total_earnings() - self.sum_due_amounts())

    def recompute(self) -> Decimal:
        """Overwrite totalEarnings with Σ dueAmount of the current payment records."""
        with self.store.transaction():
            stored = self.get_total_earnings()
            derived = self.sum_due_amounts()
            if stored != derived:
                _log.warning("shop %s balance drift %s (stored %s, derived %s); repairing",
                             self.shop_id, to_money(stored - derived), stored, derived)
                self.store.update(SHOPS, self.shop_id, {self.FIELD: derived})
        return derived
