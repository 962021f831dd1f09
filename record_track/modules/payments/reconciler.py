"""
modules/payments/reconciler.py

Purpose
-------
Joins the sales stream and the payments stream of one shop into the
reconciled "combined entries" view, and drives incremental page loads of
both streams independently.

Each stream is a PagedStream: pages fetched with load_next(), kept live by one
store subscription over the whole loaded range. The accumulated records are
deduplicated by id and kept sorted, so the join below always sees each sale
and each payment exactly once.

Public Interface
----------------
- CombinedEntry                 (derived row, one per sale)
- join_entries(sales, payments) -> list[CombinedEntry]
- PagedStream(store, query, name)
- PaymentsReconciler(store, shop_id, user_id=None)
    signals: entries_changed(list), state_changed(str),
             balance_changed(object), load_failed(str, str)
    start() / load_more() / retry() / refresh() / close()
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set

from PySide6.QtCore import QObject, QTimer, Signal

from ...constants import PAYMENTS_PAGE_SIZE, SALES_PAGE_SIZE, SHOPS
from ...database.document_store import Cursor, Document, DocumentStore, Page, Query, Subscription
from ...database.errors import ConsistencyWarning, StoreError
from ...database.repositories.sale_payments_repo import PaymentRecord, SalePaymentsRepo
from ...database.repositories.sales_repo import SalesEntry, SalesRepo
from ...database.repositories.shops_repo import Shop
from .payment_utilities.calculations import ZERO, unpaid_due

_log = logging.getLogger(__name__)


# ----------------------------
# Combined view
# ----------------------------

@dataclass
class CombinedEntry:
    id: str                       # sale id
    date: str
    product_name: str
    total: Decimal
    received: Decimal
    expense: Decimal
    due_amount: Decimal
    has_payment: bool
    payment_id: Optional[str]
    sale: SalesEntry
    payment: Optional[PaymentRecord] = None

    @property
    def is_stale(self) -> bool:
        """The sale was edited after its payment snapshot was taken."""
        return self.payment is not None and self.payment.sale_total != self.total

    @property
    def status(self) -> str:
        if not self.has_payment:
            return "Unpaid"
        return "Needs re-sync" if self.is_stale else "Paid"


def _pick_payment(sale_id: str, candidates: List[PaymentRecord], reported: Optional[Set[str]]) -> PaymentRecord:
    if len(candidates) == 1:
        return candidates[0]
    chosen = max(candidates, key=lambda p: (p.created_at or "", p.id))
    if reported is None or sale_id not in reported:
        if reported is not None:
            reported.add(sale_id)
        msg = (f"Sale {sale_id} has {len(candidates)} payment records; "
               f"using the most recent one ({chosen.id}).")
        _log.warning(msg)
        warnings.warn(msg, ConsistencyWarning, stacklevel=3)
    return chosen


def join_entries(
    sales: Iterable[SalesEntry],
    payments: Iterable[PaymentRecord],
    reported: Optional[Set[str]] = None,
) -> List[CombinedEntry]:
    """
    Left join of sales with payments on saleId, one CombinedEntry per sale,
    in the order the sales are given.

    A sale without a payment owes its whole total (due = −total). Two sales on
    the same date stay separate rows; the join key is the sale id.

    Sales with more than one payment are warned about; pass a `reported` set
    to warn once per sale across repeated joins.
    """
    by_sale: Dict[str, List[PaymentRecord]] = {}
    for p in payments:
        by_sale.setdefault(p.sale_id, []).append(p)

    out: List[CombinedEntry] = []
    for s in sales:
        candidates = by_sale.get(s.id)
        payment = _pick_payment(s.id, candidates, reported) if candidates else None
        if payment is None:
            out.append(CombinedEntry(
                id=s.id,
                date=s.date,
                product_name=s.label,
                total=s.total,
                received=ZERO,
                expense=ZERO,
                due_amount=unpaid_due(s.total),
                has_payment=False,
                payment_id=None,
                sale=s,
            ))
        else:
            out.append(CombinedEntry(
                id=s.id,
                date=s.date,
                product_name=payment.product_name or s.label,
                total=s.total,
                received=payment.amount_received,
                expense=payment.expenses_num,
                due_amount=payment.due_amount,
                has_payment=True,
                payment_id=payment.id,
                sale=s,
                payment=payment,
            ))
    return out


# ----------------------------
# One paginated stream
# ----------------------------

class PagedStream:
    """
    Accumulated, id-deduplicated view of one ordered collection.

    Key behavior:
      - Every fetched page moves the bound to that page's last position. One
        store subscription covers everything from the head down to the bound,
        so an insert, edit or delete anywhere in the loaded range (a record
        whose sort value moved within it included) arrives as a fresh snapshot
        that replaces the accumulated records.
      - load_next() fetches the page strictly after the bound. A record that
        is inserted or moved past the bound is picked up there.
      - has_more is True while the last fetched page was full. Once a page
        comes back short, the subscription covers the whole collection.
      - A failed fetch records last_error and leaves has_more and the loaded
        records untouched. A failed first page leaves has_more set, so the
        next load_next() asks for it again.
    """

    def __init__(self, store: DocumentStore, query: Query, name: str = ""):
        if query.page_size is None:
            raise ValueError("PagedStream needs a paginated query")
        self.store = store
        self.query = query
        self.name = name or query.collection
        self.on_change: Optional[Callable[["PagedStream"], None]] = None
        self.on_error: Optional[Callable[["PagedStream", StoreError], None]] = None

        self._docs: Dict[str, Document] = {}
        self._bound: Optional[Cursor] = None
        self._sub: Optional[Subscription] = None
        self._fetched = False
        self._closed = False

        self.has_more = False
        self.loading = False
        self.last_error: Optional[StoreError] = None

    # -------- lifecycle --------

    @property
    def started(self) -> bool:
        return self._fetched

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Fetch the first page and go live. A failure is reported through on_error."""
        if self._fetched or self._closed or self.loading:
            return
        self.has_more = True
        try:
            self.load_next()
        except StoreError as e:
            _log.warning("first %s page failed: %s", self.name, e)
            if self.on_error is not None:
                self.on_error(self, e)

    def close(self) -> None:
        self._closed = True
        if self._sub is not None:
            self._sub.unsubscribe()

    # -------- records --------

    def _key(self, doc: Document) -> Cursor:
        return self.query.sort_key(doc)

    def records(self) -> List[Document]:
        return sorted(self._docs.values(), key=self._key, reverse=self.query.direction == "desc")

    @property
    def ids(self) -> Set[str]:
        return set(self._docs)

    def __len__(self) -> int:
        return len(self._docs)

    def cursor(self) -> Optional[Cursor]:
        """Position the next page starts after (None before the first page)."""
        return self._bound

    # -------- live range --------

    def _live_query(self) -> Query:
        return self.query.through(self._bound if self.has_more else None)

    def _watch(self) -> None:
        if self._sub is None:
            self._sub = self.store.subscribe(self._live_query(), self._on_snapshot, self._on_subscription_error)
        else:
            self._sub.requery(self._live_query())

    def _on_snapshot(self, page: Page) -> None:
        if self._closed:
            return
        self._docs = {d["id"]: d for d in page.docs}
        self.last_error = None
        if self.on_change is not None:
            self.on_change(self)

    def _on_subscription_error(self, error: StoreError) -> None:
        if self._closed:
            return
        self.last_error = error
        _log.warning("live %s snapshot failed: %s", self.name, error)
        if self.on_error is not None:
            self.on_error(self, error)

    # -------- paging --------

    def load_next(self) -> bool:
        """
        Fetch the next older page. Returns True when a page was applied.
        Raises StoreError after recording it in last_error.
        """
        if self._closed or self.loading or not self.has_more:
            return False
        self.loading = True
        try:
            page = self.store.query(self.query, after=self._bound)
        except StoreError as e:
            self.last_error = e
            raise
        finally:
            self.loading = False

        if self._closed:
            # closed while the fetch was in flight
            return False
        if page.cursor is not None:
            self._bound = page.cursor
        self.has_more = page.is_full
        self._fetched = True
        self.last_error = None
        _log.debug("%s: fetched %d record(s), has_more=%s", self.name, len(page.docs), self.has_more)
        self._watch()
        return True



# ----------------------------
# Reconciler
# ----------------------------

class PaymentsReconciler(QObject):
    """
    Reconciled payments view of one shop.

    States: idle → loading → ready ⇄ loading_more → ... → exhausted; closed at
    any point after close().

    The view is rebuilt from both accumulated streams on every change to
    either of them, so a payment arriving before its sale (or the other way
    round) converges once both have arrived. Nothing is mutated
    optimistically: writes go through the ledgers and come back through the
    subscriptions.
    """

    entries_changed = Signal(list)        # list[CombinedEntry]
    state_changed = Signal(str)
    balance_changed = Signal(object)      # Decimal
    load_failed = Signal(str, str)        # stream name, user-facing message

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    LOADING_MORE = "loading_more"
    EXHAUSTED = "exhausted"
    CLOSED = "closed"

    def __init__(
        self,
        store: DocumentStore,
        shop_id: str,
        user_id: Optional[str] = None,
        *,
        sales_page_size: int = SALES_PAGE_SIZE,
        payments_page_size: int = PAYMENTS_PAGE_SIZE,
        poll_interval_ms: int = 0,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.store = store
        self.shop_id = shop_id
        self.user_id = user_id

        self._sales = PagedStream(
            store, SalesRepo(store, shop_id, user_id).page_query(sales_page_size), name="sales")
        self._payments = PagedStream(
            store, SalePaymentsRepo(store, shop_id, user_id).page_query(payments_page_size), name="payments")
        for stream in (self._sales, self._payments):
            stream.on_change = self._on_stream_changed
            stream.on_error = self._on_stream_error

        self._state = self.IDLE
        self._entries: List[CombinedEntry] = []
        self._shop: Optional[Shop] = None
        self._shop_sub: Optional[Subscription] = None
        self._last_balance: Optional[Decimal] = None
        self._warned_orphans: Set[str] = set()
        self._warned_duplicates: Set[str] = set()

        self._timer: Optional[QTimer] = None
        if poll_interval_ms > 0:
            self._timer = QTimer(self)
            self._timer.setInterval(poll_interval_ms)
            self._timer.timeout.connect(self.refresh)

    # -------- properties --------

    @property
    def state(self) -> str:
        return self._state

    @property
    def entries(self) -> List[CombinedEntry]:
        return list(self._entries)

    @property
    def has_more(self) -> bool:
        return self._sales.has_more or self._payments.has_more

    @property
    def total_earnings(self) -> Decimal:
        return self._shop.total_earnings if self._shop is not None else ZERO

    @property
    def shop_name(self) -> str:
        return self._shop.name if self._shop is not None else "Unknown Shop"

    @property
    def sales_stream(self) -> PagedStream:
        return self._sales

    @property
    def payments_stream(self) -> PagedStream:
        return self._payments

    def _set_state(self, state: str) -> None:
        if state != self._state:
            self._state = state
            self.state_changed.emit(state)

    def _settle(self) -> None:
        self._set_state(self.READY if self.has_more else self.EXHAUSTED)

    # -------- lifecycle --------

    def start(self) -> None:
        """Subscribe to both first pages and to the shop document."""
        if self._state != self.IDLE:
            return
        self._set_state(self.LOADING)
        self._shop_sub = self.store.watch_document(SHOPS, self.shop_id, self._on_shop, self._on_shop_error)
        self._sales.start()
        self._payments.start()
        if self._state == self.CLOSED:
            return
        self._rebuild()
        self._settle()
        if self._timer is not None:
            self._timer.start()

    def load_more(self) -> bool:
        """
        Fetch the next page of every stream that still has more.
        Returns True when at least one page was applied and none failed.
        """
        if self._state not in (self.READY, self.EXHAUSTED) or not self.has_more:
            return False
        self._set_state(self.LOADING_MORE)
        applied = False
        failed = False
        for stream in (self._sales, self._payments):
            if not stream.has_more:
                continue
            try:
                applied = stream.load_next() or applied
            except StoreError as e:
                failed = True
                _log.warning("loading more %s failed: %s", stream.name, e)
                self.load_failed.emit(stream.name, str(e))
            if self._state == self.CLOSED:
                return False
        self._settle()
        return applied and not failed

    def retry(self) -> bool:
        """Retry after a failure: restart from idle, otherwise load the next pages again."""
        if self._state == self.IDLE:
            self.start()
            return self._state != self.CLOSED
        return self.load_more()

    def refresh(self) -> bool:
        """Pick up writes made through other connections (other devices)."""
        if self._state in (self.IDLE, self.CLOSED):
            return False
        try:
            return self.store.poll_external_changes()
        except StoreError as e:
            _log.warning("refresh failed: %s", e)
            self.load_failed.emit("refresh", str(e))
            return False

    def close(self) -> None:
        """Stop all deliveries; results of fetches still in flight are dropped."""
        if self._state == self.CLOSED:
            return
        if self._timer is not None:
            self._timer.stop()
        self._sales.close()
        self._payments.close()
        if self._shop_sub is not None:
            self._shop_sub.unsubscribe()
        self._set_state(self.CLOSED)

    # -------- callbacks --------

    def _on_stream_changed(self, stream: PagedStream) -> None:
        # start() rebuilds once both first pages are in
        if self._state in (self.IDLE, self.LOADING, self.CLOSED):
            return
        # the sales snapshot of a commit arrives before the payments one, so a
        # sales-only change may still see payments that are about to go away
        self._rebuild(check_orphans=stream is self._payments or self._state == self.LOADING_MORE)
        if self._state != self.LOADING_MORE:
            self._settle()

    def _on_stream_error(self, stream: PagedStream, error: StoreError) -> None:
        if self._state != self.CLOSED:
            self.load_failed.emit(stream.name, str(error))

    def _on_shop(self, doc: Optional[Document]) -> None:
        if self._state == self.CLOSED:
            return
        if doc is None:
            _log.warning("shop %s not found", self.shop_id)
        self._shop = Shop.from_document(doc) if doc is not None else None
        total = self.total_earnings
        if total != self._last_balance:
            self._last_balance = total
            self.balance_changed.emit(total)

    def _on_shop_error(self, error: StoreError) -> None:
        if self._state != self.CLOSED:
            self.load_failed.emit("shop", str(error))

    # -------- join --------

    def _rebuild(self, check_orphans: bool = True) -> None:
        sales = [SalesEntry.from_document(d) for d in self._sales.records()]
        payments = [PaymentRecord.from_document(d) for d in self._payments.records()]
        self._entries = join_entries(sales, payments, self._warned_duplicates)
        if check_orphans and not self._sales.has_more:
            self._check_orphans(sales, payments)
        self.entries_changed.emit(self.entries)

    def _check_orphans(self, sales: List[SalesEntry], payments: List[PaymentRecord]) -> None:
        """Every sale is loaded: a payment whose sale is absent points at a deleted sale."""
        sale_ids = {s.id for s in sales}
        for p in payments:
            if p.sale_id in sale_ids or p.id in self._warned_orphans:
                continue
            self._warned_orphans.add(p.id)
            msg = f"Payment {p.id} refers to sale {p.sale_id}, which no longer exists."
            _log.warning(msg)
            warnings.warn(msg, ConsistencyWarning, stacklevel=2)
