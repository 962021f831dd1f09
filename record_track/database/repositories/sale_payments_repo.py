from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ...constants import PAYMENTS, PAYMENTS_PAGE_SIZE, SALES, SHOPS
from ...modules.payments.payment_utilities.calculations import (
    due_amount,
    due_delta,
    to_money,
)
from ...utils.helpers import today_str
from ...utils.validators import try_parse_decimal
from ..document_store import DocumentStore, Query, collection_path
from ..errors import DocumentNotFoundError, DuplicatePaymentError, ValidationError
from .balance_repo import BalanceRepo
from .sales_repo import SalesEntry, SalesRepo

_log = logging.getLogger(__name__)


@dataclass
class PaymentRecord:
    id: str
    sale_id: str
    product_name: Optional[str]
    sale_date: Optional[str]
    sale_total: Decimal
    amount_received: Decimal
    expenses_num: Decimal
    due_amount: Decimal
    payment_date: Optional[str]
    user_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_document(cls, doc: dict) -> "PaymentRecord":
        return cls(
            id=doc["id"],
            sale_id=doc.get("saleId") or "",
            product_name=doc.get("productName"),
            sale_date=doc.get("saleDate"),
            sale_total=to_money(doc.get("saleTotal")),
            amount_received=to_money(doc.get("amountReceived")),
            expenses_num=to_money(doc.get("expensesNum")),
            due_amount=to_money(doc.get("dueAmount")),
            payment_date=doc.get("paymentDate"),
            user_id=doc.get("userId"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )

    def to_document(self) -> dict:
        doc = {
            "saleId": self.sale_id,
            "productName": self.product_name,
            "saleDate": self.sale_date,
            "saleTotal": self.sale_total,
            "amountReceived": self.amount_received,
            "expensesNum": self.expenses_num,
            "dueAmount": self.due_amount,
            "paymentDate": self.payment_date,
            "userId": self.user_id,
            "createdAt": self.created_at,
        }
        if self.updated_at:
            doc["updatedAt"] = self.updated_at
        return doc


def _blank(x) -> bool:
    return x is None or (isinstance(x, str) and not x.strip())


def validate_payment_amounts(amount_received, expenses_num) -> tuple[Decimal, Decimal]:
    """
    amountReceived must be a finite number > 0, expensesNum a finite number >= 0.
    Raises ValidationError naming the offending field; the messages are the
    ones the payment form shows.
    """
    if _blank(amount_received):
        raise ValidationError("amountReceived", "Amount is required")
    ok, received = try_parse_decimal(amount_received)
    if not ok or received <= 0:
        raise ValidationError("amountReceived", "Please enter a valid positive amount")

    if _blank(expenses_num):
        raise ValidationError("expensesNum", "Expenses field is required")
    ok, expenses = try_parse_decimal(expenses_num)
    if not ok or expenses < 0:
        raise ValidationError("expensesNum", "Please enter a valid expense amount")
    return to_money(received), to_money(expenses)


class SalePaymentsRepo:
    """
    Payment ledger of one shop (rows in shops/<id>/payments).

    Rules enforced here:
      • At most one payment record per sale.
      • dueAmount = amountReceived + expensesNum − saleTotal, stored on the record.
      • Every create/edit applies its due (or the due difference) to the shop's
        totalEarnings in the SAME store transaction as the record write.
      • Deleting a payment never reverses its effect on totalEarnings: the
        balance is a ledger of cash actually received/spent.

    Lifecycle:
      • receive_payment(...) attaches a payment to an unpaid sale.
      • edit_payment(...) changes the amounts and applies the due difference.
      • resync_payment(...) re-snapshots the sale total after the sale was edited.
      • delete_payment(...) / delete_reconciled_entry(...) remove records.
    """

    def __init__(self, store: DocumentStore, shop_id: str, user_id: Optional[str] = None):
        self.store = store
        self.shop_id = shop_id
        self.user_id = user_id
        self.collection = collection_path(SHOPS, shop_id, PAYMENTS)
        self.sales_collection = collection_path(SHOPS, shop_id, SALES)
        self.balance = BalanceRepo(store, shop_id)

    def page_query(self, page_size: int = PAYMENTS_PAGE_SIZE) -> Query:
        q = Query(self.collection, order_by="createdAt", direction="desc", page_size=page_size)
        return q.where("userId", self.user_id) if self.user_id is not None else q

    # --- reads --------------------------------------------------------------

    def get_payment(self, payment_id: str) -> PaymentRecord | None:
        doc = self.store.get_one(self.collection, payment_id)
        return PaymentRecord.from_document(doc) if doc else None

    def get_by_sale(self, sale_id: str) -> PaymentRecord | None:
        """Newest payment for the sale (there should be at most one)."""
        docs = self.store.find(self.collection, [("saleId", sale_id)])
        if len(docs) > 1:
            _log.warning("sale %s has %d payment records", sale_id, len(docs))
        return PaymentRecord.from_document(docs[0]) if docs else None

    def list_payments(self) -> list[PaymentRecord]:
        return [PaymentRecord.from_document(d) for d in self.store.query(self.page_query().unpaginated()).docs]

    def _require_payment(self, payment_id: str) -> dict:
        doc = self.store.get_one(self.collection, payment_id)
        if doc is None:
            raise DocumentNotFoundError(self.collection, payment_id)
        return doc

    # --- writes -------------------------------------------------------------

    def receive_payment(
        self,
        sale_id: str,
        sale_total=None,
        amount_received=None,
        expenses_num=None,
        payment_date: Optional[str] = None,
    ) -> str:
        """
        Record a payment against an unpaid sale and return the payment id.

        sale_total=None uses the sale's stored total. The balance update and the
        record insert commit together; on any error nothing is written.
        """
        received, expenses = validate_payment_amounts(amount_received, expenses_num)

        with self.store.transaction():
            sale_doc = self.store.get_one(self.sales_collection, sale_id)
            if sale_doc is None:
                raise DocumentNotFoundError(self.sales_collection, sale_id)
            sale = SalesEntry.from_document(sale_doc)

            existing = self.store.find(self.collection, [("saleId", sale_id)])
            if existing:
                raise DuplicatePaymentError(sale_id, existing[0]["id"])

            total = sale.total if sale_total is None else to_money(sale_total)
            due = due_amount(received, expenses, total)

            self.balance.apply(due)
            payment_id = self.store.create(self.collection, {
                "saleId": sale_id,
                "productName": sale.label,
                "saleDate": sale.date,
                "saleTotal": total,
                "amountReceived": received,
                "expensesNum": expenses,
                "dueAmount": due,
                "paymentDate": payment_date or today_str(),
                "userId": self.user_id,
                "createdAt": self.store.now_iso(),
            })

        _log.info("payment %s recorded for sale %s (due=%s)", payment_id, sale_id, due)
        return payment_id

    def edit_payment(
        self,
        payment_id: str,
        old_due_amount=None,
        amount_received=None,
        expenses_num=None,
        sale_total=None,
        payment_date: Optional[str] = None,
    ) -> Decimal:
        """
        Change a payment's amounts; totalEarnings moves by (new due − old due).
        Returns the new due amount.

        The stored dueAmount is the authoritative "old" value; a different
        `old_due_amount` from a stale form is logged and ignored so the balance
        always ends at initial + final due.
        """
        received, expenses = validate_payment_amounts(amount_received, expenses_num)

        with self.store.transaction():
            doc = self._require_payment(payment_id)
            stored_old = to_money(doc.get("dueAmount"))
            if old_due_amount is not None and to_money(old_due_amount) != stored_old:
                _log.warning(
                    "payment %s: caller's old due %s differs from stored %s; using stored",
                    payment_id, to_money(old_due_amount), stored_old,
                )
            total = to_money(doc.get("saleTotal")) if sale_total is None else to_money(sale_total)
            new_due = due_amount(received, expenses, total)

            self.balance.apply(due_delta(new_due, stored_old))
            partial = {
                "amountReceived": received,
                "expensesNum": expenses,
                "saleTotal": total,
                "dueAmount": new_due,
                "updatedAt": self.store.now_iso(),
            }
            if payment_date:
                partial["paymentDate"] = payment_date
            self.store.update(self.collection, payment_id, partial)

        _log.info("payment %s edited (due %s -> %s)", payment_id, stored_old, new_due)
        return new_due

    def resync_payment(self, payment_id: str) -> Decimal:
        """
        Re-snapshot saleTotal/saleDate from the current sale (after the sale was
        edited), recompute dueAmount and apply the difference to the balance.
        Returns the new due amount.
        """
        with self.store.transaction():
            doc = self._require_payment(payment_id)
            sale_doc = self.store.get_one(self.sales_collection, doc.get("saleId") or "")
            if sale_doc is None:
                raise DocumentNotFoundError(self.sales_collection, doc.get("saleId") or "")
            sale = SalesEntry.from_document(sale_doc)
            old_due = to_money(doc.get("dueAmount"))
            new_due = due_amount(doc.get("amountReceived"), doc.get("expensesNum"), sale.total)
            if new_due != old_due or to_money(doc.get("saleTotal")) != sale.total:
                self.balance.apply(due_delta(new_due, old_due))
                self.store.update(self.collection, payment_id, {
                    "saleTotal": sale.total,
                    "saleDate": sale.date,
                    "dueAmount": new_due,
                    "updatedAt": self.store.now_iso(),
                })
        _log.info("payment %s re-synced with sale %s (due=%s)", payment_id, sale.id, new_due)
        return new_due

    def delete_payment(self, payment_id: str) -> bool:
        """Remove the record only. totalEarnings is deliberately left unchanged."""
        deleted = self.store.delete(self.collection, payment_id)
        if deleted:
            _log.info("payment %s deleted (balance unchanged)", payment_id)
        return deleted

    def delete_reconciled_entry(self, sale_id: str) -> int:
        """
        Delete a whole reconciled entry: every payment record of the sale and
        the sale itself, in one transaction. totalEarnings is unchanged.
        Returns the number of payment records removed.
        """
        with self.store.transaction():
            payments = self.store.find(self.collection, [("saleId", sale_id)])
            for p in payments:
                self.store.delete(self.collection, p["id"])
            SalesRepo(self.store, self.shop_id, self.user_id).delete_sale(sale_id)
        _log.info("entry %s deleted with %d payment record(s)", sale_id, len(payments))
        return len(payments)
