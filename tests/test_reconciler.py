import warnings
from decimal import Decimal

import pytest

from record_track.constants import PAYMENTS, SALES, SHOPS
from record_track.database import collection_path
from record_track.database.errors import ConsistencyWarning, StoreError
from record_track.database.repositories import PaymentRecord, SalesEntry, SalesRepo
from record_track.modules.payments.reconciler import (
    PagedStream,
    PaymentsReconciler,
    join_entries,
)


def _sale(sale_id, date, total):
    return SalesEntry.from_document({"id": sale_id, "date": date, "quantities": {"p": "1"}, "total": total})


def _payment(payment_id, sale_id, received, expenses, total, created_at="2024-01-01T00:00:00+00:00"):
    due = Decimal(received) + Decimal(expenses) - Decimal(total)
    return PaymentRecord.from_document({
        "id": payment_id, "saleId": sale_id, "saleTotal": total, "amountReceived": received,
        "expensesNum": expenses, "dueAmount": str(due), "createdAt": created_at,
    })


def _seed_sales(sales_repo, products, milk, n):
    return [
        sales_repo.create_sale(f"2024-{1 + i // 28:02d}-{1 + i % 28:02d}", {milk.id: 1}, products,
                               record_breakdown=False)
        for i in range(n)
    ]


@pytest.fixture()
def reconciler(qapp, store, shop_id):
    r = PaymentsReconciler(store, shop_id)
    yield r
    r.close()


# ---------------- join ----------------

def test_unpaid_entry_owes_whole_total():
    [entry] = join_entries([_sale("s1", "2024-01-01", "500")], [])
    assert entry.has_payment is False
    assert entry.payment_id is None
    assert entry.due_amount == Decimal("-500.00")
    assert entry.status == "Unpaid"


def test_same_day_sales_stay_separate():
    sales = [_sale("s1", "2024-01-01", "100"), _sale("s2", "2024-01-01", "200")]
    payments = [_payment("p1", "s2", "250", "0", "200")]
    entries = join_entries(sales, payments)
    assert [(e.id, e.has_payment, e.due_amount) for e in entries] == [
        ("s1", False, Decimal("-100.00")),
        ("s2", True, Decimal("50.00")),
    ]


def test_join_does_not_depend_on_payment_order():
    sales = [_sale("s1", "2024-01-02", "100"), _sale("s2", "2024-01-01", "200")]
    payments = [_payment("p1", "s1", "100", "0", "100"), _payment("p2", "s2", "150", "10", "200")]
    assert join_entries(sales, payments) == join_entries(sales, list(reversed(payments)))


def test_duplicate_payments_pick_newest_and_warn():
    sales = [_sale("s1", "2024-01-01", "100")]
    older = _payment("p-old", "s1", "10", "0", "100", created_at="2024-01-01T00:00:00+00:00")
    newer = _payment("p-new", "s1", "90", "0", "100", created_at="2024-01-02T00:00:00+00:00")
    with pytest.warns(ConsistencyWarning, match="2 payment records"):
        [entry] = join_entries(sales, [newer, older])
    assert entry.payment_id == "p-new"
    assert entry.received == Decimal("90.00")


def test_duplicate_payments_reported_once_per_sale():
    sales = [_sale("s1", "2024-01-01", "100")]
    payments = [_payment("p1", "s1", "10", "0", "100"), _payment("p2", "s1", "90", "0", "100")]
    reported = set()
    with pytest.warns(ConsistencyWarning):
        join_entries(sales, payments, reported)
    assert reported == {"s1"}
    with warnings.catch_warnings():
        warnings.simplefilter("error", ConsistencyWarning)
        join_entries(sales, payments, reported)


def test_stale_snapshot_is_flagged():
    sales = [_sale("s1", "2024-01-01", "600")]
    [entry] = join_entries(sales, [_payment("p1", "s1", "400", "50", "500")])
    assert entry.is_stale
    assert entry.status == "Needs re-sync"
    assert entry.due_amount == Decimal("-50.00")


# ---------------- paged stream ----------------

def test_paged_stream_requires_page_size(store, sales_repo):
    with pytest.raises(ValueError):
        PagedStream(store, sales_repo.page_query().unpaginated())


def test_paged_stream_keeps_loaded_records_when_newer_ones_arrive(store, sales_repo, products, milk):
    _seed_sales(sales_repo, products, milk, 12)
    stream = PagedStream(store, sales_repo.page_query(page_size=5))
    stream.start()
    assert len(stream) == 5 and stream.has_more

    for d in ("2025-01-01", "2025-01-02"):
        sales_repo.create_sale(d, {milk.id: 1}, products, record_breakdown=False)
    assert len(stream) == 7          # 5 loaded + 2 new at the head

    while stream.has_more:
        stream.load_next()
    everything = store.query(sales_repo.page_query().unpaginated()).ids
    assert [d["id"] for d in stream.records()] == everything
    stream.close()


def test_paged_stream_drops_deleted_records(store, sales_repo, products, milk):
    ids = _seed_sales(sales_repo, products, milk, 3)
    stream = PagedStream(store, sales_repo.page_query(page_size=5))
    stream.start()
    sales_repo.delete_sale(ids[1])
    assert stream.ids == {ids[0], ids[2]}
    stream.close()


def test_closed_stream_ignores_snapshots(store, sales_repo, products, milk):
    stream = PagedStream(store, sales_repo.page_query(page_size=5))
    stream.start()
    stream.close()
    _seed_sales(sales_repo, products, milk, 2)
    assert len(stream) == 0
    assert stream.load_next() is False


def test_paged_stream_follows_record_moved_into_loaded_range(store, sales_repo, products, milk):
    ids = _seed_sales(sales_repo, products, milk, 12)
    stream = PagedStream(store, sales_repo.page_query(page_size=5))
    stream.start()
    stream.load_next()
    assert len(stream) == 10 and stream.has_more

    # newest sale back-dated among the already loaded older page
    sales_repo.update_sale(ids[-1], "2024-01-04", {milk.id: 2}, products)
    assert ids[-1] in stream.ids
    [moved] = [d for d in stream.records() if d["id"] == ids[-1]]
    assert moved["date"] == "2024-01-04"

    while stream.has_more:
        stream.load_next()
    everything = store.query(sales_repo.page_query().unpaginated()).ids
    assert [d["id"] for d in stream.records()] == everything
    stream.close()


def test_paged_stream_picks_up_record_moved_past_loaded_range(store, sales_repo, products, milk):
    ids = _seed_sales(sales_repo, products, milk, 12)
    stream = PagedStream(store, sales_repo.page_query(page_size=5))
    stream.start()

    sales_repo.update_sale(ids[-1], "2023-06-01", {milk.id: 1}, products)
    assert ids[-1] not in stream.ids
    assert len(stream) == 4

    while stream.has_more:
        stream.load_next()
    assert [d["id"] for d in stream.records()][-1] == ids[-1]
    assert len(stream) == 12
    stream.close()


def test_failed_first_page_is_fetched_again(store, sales_repo, products, milk, monkeypatch):
    _seed_sales(sales_repo, products, milk, 3)
    stream = PagedStream(store, sales_repo.page_query(page_size=5))
    errors = []
    stream.on_error = lambda s, e: errors.append(str(e))

    def boom(query, after=None):
        raise StoreError("Timed out while trying to load sales. Please try again.")

    monkeypatch.setattr(store, "query", boom)
    stream.start()
    assert errors == ["Timed out while trying to load sales. Please try again."]
    assert len(stream) == 0 and stream.has_more and not stream.started

    monkeypatch.undo()
    assert stream.load_next() is True
    assert len(stream) == 3 and not stream.has_more
    assert stream.last_error is None
    stream.close()


# ---------------- reconciler ----------------

def test_start_on_empty_shop(reconciler):
    states = []
    reconciler.state_changed.connect(states.append)
    reconciler.start()
    assert states == ["loading", "exhausted"]
    assert reconciler.entries == []
    assert reconciler.has_more is False
    assert reconciler.total_earnings == Decimal("0.00")
    assert reconciler.shop_name == "Test Shop"


def test_load_more_until_exhausted_covers_every_sale(reconciler, sales_repo, products, milk):
    ids = _seed_sales(sales_repo, products, milk, 25)
    reconciler.start()
    assert len(reconciler.entries) == 10
    assert reconciler.has_more and reconciler.state == "ready"

    assert reconciler.load_more() is True
    assert len(reconciler.entries) == 20
    assert reconciler.load_more() is True
    assert reconciler.state == "exhausted" and not reconciler.has_more
    assert reconciler.load_more() is False

    seen = [e.id for e in reconciler.entries]
    assert len(seen) == len(set(seen)) == 25
    assert set(seen) == set(ids)
    dates = [e.date for e in reconciler.entries]
    assert dates == sorted(dates, reverse=True)


def test_insert_between_pages_creates_no_gap_or_duplicate(reconciler, sales_repo, products, milk):
    _seed_sales(sales_repo, products, milk, 25)
    reconciler.start()
    newest = sales_repo.create_sale("2030-01-01", {milk.id: 3}, products)
    assert reconciler.entries[0].id == newest

    while reconciler.load_more():
        pass
    seen = [e.id for e in reconciler.entries]
    assert len(seen) == len(set(seen)) == 26
    assert seen == [s.id for s in sales_repo.list_sales()]


def test_live_updates_flow_into_entries(qtbot, reconciler, sales_repo, payments_repo, milk_sale):
    reconciler.start()
    [entry] = reconciler.entries
    assert entry.has_payment is False and entry.due_amount == Decimal("-500.00")

    with qtbot.waitSignal(reconciler.balance_changed) as blocker:
        payments_repo.receive_payment(milk_sale, None, 400, 50)
    assert blocker.args == [Decimal("-50.00")]
    [entry] = reconciler.entries
    assert entry.has_payment and entry.due_amount == Decimal("-50.00")
    assert reconciler.total_earnings == Decimal("-50.00")

    payments_repo.delete_reconciled_entry(milk_sale)
    assert reconciler.entries == []
    assert reconciler.total_earnings == Decimal("-50.00")


def test_payment_arriving_before_its_sale_converges(reconciler, store, shop_id):
    reconciler.start()
    sales_coll = collection_path(SHOPS, shop_id, SALES)
    payments_coll = collection_path(SHOPS, shop_id, PAYMENTS)

    with pytest.warns(ConsistencyWarning, match="no longer exists"):
        store.create(payments_coll, {
            "saleId": "s-late", "saleTotal": "80.00", "amountReceived": "100",
            "expensesNum": "0", "dueAmount": "20.00", "createdAt": store.now_iso(),
        })
    assert reconciler.entries == []

    store.create(sales_coll, {
        "date": "2024-01-02", "quantities": {"p": "1"}, "total": "80.00", "createdAt": store.now_iso(),
    }, doc_id="s-late")
    [entry] = reconciler.entries
    assert entry.id == "s-late" and entry.has_payment
    assert entry.due_amount == Decimal("20.00")


def test_duplicate_payments_in_store_warn(reconciler, store, shop_id, milk_sale):
    payments_coll = collection_path(SHOPS, shop_id, PAYMENTS)
    for received in ("100", "450"):
        store.create(payments_coll, {
            "saleId": milk_sale, "saleTotal": "500.00", "amountReceived": received,
            "expensesNum": "0", "dueAmount": "0", "createdAt": store.now_iso(),
        })
    with pytest.warns(ConsistencyWarning):
        reconciler.start()
    [entry] = reconciler.entries
    assert entry.received == Decimal("450.00")


def test_failed_page_keeps_loaded_entries_and_has_more(reconciler, store, sales_repo, products, milk, monkeypatch):
    _seed_sales(sales_repo, products, milk, 15)
    reconciler.start()
    before = [e.id for e in reconciler.entries]
    failures = []
    reconciler.load_failed.connect(lambda stream, msg: failures.append((stream, msg)))

    def boom(query, after=None):
        raise StoreError("Timed out while trying to load sales. Please try again.")

    monkeypatch.setattr(store, "query", boom)
    assert reconciler.load_more() is False
    assert failures == [("sales", "Timed out while trying to load sales. Please try again.")]
    assert [e.id for e in reconciler.entries] == before
    assert reconciler.has_more and reconciler.state == "ready"
    assert isinstance(reconciler.sales_stream.last_error, StoreError)

    monkeypatch.undo()
    assert reconciler.retry() is True
    assert len(reconciler.entries) == 15
    assert reconciler.sales_stream.last_error is None


def test_close_stops_delivery(reconciler, sales_repo, products, milk):
    reconciler.start()
    emitted = []
    reconciler.entries_changed.connect(emitted.append)
    reconciler.close()
    sales_repo.create_sale("2024-01-01", {milk.id: 1}, products)
    assert emitted == []
    assert reconciler.state == "closed"
    assert reconciler.load_more() is False
    reconciler.close()


def test_user_scoped_reconciler(qapp, store, shop_id, products, milk):
    SalesRepo(store, shop_id, user_id="u1").create_sale("2024-01-01", {milk.id: 1}, products)
    SalesRepo(store, shop_id, user_id="u2").create_sale("2024-01-01", {milk.id: 2}, products)
    r = PaymentsReconciler(store, shop_id, user_id="u1")
    try:
        r.start()
        assert [e.total for e in r.entries] == [Decimal("50.00")]
    finally:
        r.close()


def test_refresh_picks_up_other_device(reconciler, db_path, shop_id, products, milk):
    from record_track.database import get_store

    reconciler.start()
    other = get_store(db_path)
    try:
        SalesRepo(other, shop_id).create_sale("2024-01-01", {milk.id: 1}, products)
    finally:
        other.close()
    assert reconciler.entries == []
    assert reconciler.refresh() is True
    assert len(reconciler.entries) == 1


def test_older_page_edits_and_deletes_reach_entries(reconciler, sales_repo, payments_repo, products, milk):
    ids = _seed_sales(sales_repo, products, milk, 25)
    paid = {sale_id: payments_repo.receive_payment(sale_id, None, 50, 0) for sale_id in ids}
    reconciler.start()
    assert reconciler.load_more() is True
    assert len(reconciler.entries) == 20 and reconciler.has_more
    target = ids[5]
    assert reconciler.entries[-1].id == target

    payments_repo.edit_payment(paid[target], None, 30, 5)
    [entry] = [e for e in reconciler.entries if e.id == target]
    assert entry.received == Decimal("30.00")
    assert entry.due_amount == Decimal("-15.00")

    payments_repo.delete_reconciled_entry(target)
    assert target not in {e.id for e in reconciler.entries}
    assert len(reconciler.entries) == 19

    while reconciler.load_more():
        pass
    assert [e.id for e in reconciler.entries] == [s.id for s in sales_repo.list_sales()]


def test_duplicate_payments_warn_once_across_rebuilds(reconciler, store, shop_id, sales_repo, products, milk,
                                                      milk_sale):
    payments_coll = collection_path(SHOPS, shop_id, PAYMENTS)
    for received in ("100", "450"):
        store.create(payments_coll, {
            "saleId": milk_sale, "saleTotal": "500.00", "amountReceived": received,
            "expensesNum": "0", "dueAmount": "0", "createdAt": store.now_iso(),
        })
    with pytest.warns(ConsistencyWarning):
        reconciler.start()

    with warnings.catch_warnings():
        warnings.simplefilter("error", ConsistencyWarning)
        sales_repo.create_sale("2024-02-01", {milk.id: 1}, products)
    assert len(reconciler.entries) == 2


def test_failed_first_page_reports_and_retries(qapp, store, shop_id, sales_repo, products, milk, monkeypatch):
    _seed_sales(sales_repo, products, milk, 3)
    r = PaymentsReconciler(store, shop_id)
    failures = []
    r.load_failed.connect(lambda stream, msg: failures.append(stream))

    def boom(query, after=None):
        raise StoreError("Timed out while trying to load sales. Please try again.")

    monkeypatch.setattr(store, "query", boom)
    try:
        r.start()
        assert failures == ["sales", "payments"]
        assert r.entries == [] and r.state == "ready"

        monkeypatch.undo()
        assert r.retry() is True
        assert len(r.entries) == 3 and r.state == "exhausted"
    finally:
        r.close()
