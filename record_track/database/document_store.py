"""
database/document_store.py

Document store the ledgers and the reconciler talk to.

Documents are schemaless JSON bodies grouped in collections addressed by path
("shops/<shopId>/sales"). The store offers:

  • ordered range queries with cursor pagination (startAfter semantics),
  • live subscriptions that receive a full snapshot of their window after
    every committed write that changes it,
  • single-document create / update / delete / get,
  • an atomic increment and explicit transactions, so a ledger write and the
    balance update it implies commit or roll back together.

Delivery is synchronous and single-threaded: snapshots are pushed right after
the outermost transaction commits, in subscription order. Writes made through
another connection (another device on the same database file) are picked up by
poll_external_changes().
"""
from __future__ import annotations

import json
import logging
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
from uuid import uuid4

from ..constants import FETCH_TIMEOUT_SECONDS
from .errors import DocumentNotFoundError, StoreError
from .schema import apply_schema

_log = logging.getLogger(__name__)

Document = Dict[str, Any]
Cursor = Tuple[Any, str]          # (order-by value, doc_id) of the last doc on a page
Filter = Tuple[str, Any]          # equality filter on a top-level field

_FIELD_RX = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_MISSING = "\x00missing"


def _field_path(name: str) -> str:
    if not _FIELD_RX.match(name or ""):
        raise ValueError(f"Invalid field name: {name!r}")
    return f"$.{name}"


def _json_default(o: Any) -> Any:
    if isinstance(o, Decimal):
        return str(o)
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    raise TypeError(f"Object of type {o.__class__.__name__} is not JSON serializable")


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, sort_keys=True, default=_json_default)


def collection_path(*parts: str) -> str:
    """collection_path("shops", shop_id, "sales") -> "shops/<id>/sales"."""
    if not parts or any(not str(p).strip() or "/" in str(p) for p in parts):
        raise ValueError(f"Invalid collection path parts: {parts!r}")
    return "/".join(str(p) for p in parts)


# ----------------------------------------------------------------------
# Query / Page
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Query:
    collection: str
    order_by: str = "createdAt"
    direction: str = "desc"
    page_size: Optional[int] = None
    filters: Tuple[Filter, ...] = ()
    until: Optional[Cursor] = None    # inclusive end position

    def __post_init__(self):
        _field_path(self.order_by)
        if self.direction not in ("asc", "desc"):
            raise ValueError("direction must be 'asc' or 'desc'")
        if self.page_size is not None and self.page_size <= 0:
            raise ValueError("page_size must be positive")
        for name, _ in self.filters:
            _field_path(name)

    def where(self, name: str, value: Any) -> "Query":
        return replace(self, filters=self.filters + ((name, value),))

    def unpaginated(self) -> "Query":
        return replace(self, page_size=None)

    def through(self, cursor: Optional[Cursor]) -> "Query":
        """Everything from the head up to and including `cursor` (the whole collection when None)."""
        return replace(self, page_size=None, until=cursor)

    def sort_key(self, doc: Document) -> Cursor:
        """Python mirror of the SQL ordering (value, then id), ascending."""
        v = doc.get(self.order_by)
        return ("" if v is None else v, doc["id"])


@dataclass
class Page:
    docs: List[Document]
    cursor: Optional[Cursor]
    page_size: Optional[int] = None

    @property
    def is_full(self) -> bool:
        """A full page means there may be more records after it."""
        return self.page_size is not None and len(self.docs) == self.page_size

    @property
    def ids(self) -> List[str]:
        return [d["id"] for d in self.docs]


# ----------------------------------------------------------------------
# Subscriptions
# ----------------------------------------------------------------------

@dataclass(eq=False)
class _Listener:
    collection: str
    on_snapshot: Callable[[Any], None]
    on_error: Optional[Callable[[StoreError], None]]
    query: Optional[Query] = None
    doc_id: Optional[str] = None
    fingerprint: Any = field(default=None, repr=False)
    delivered: bool = False
    active: bool = True


class Subscription:
    """Handle returned by subscribe()/watch_document(). unsubscribe() is idempotent."""

    def __init__(self, store: "DocumentStore", listener: _Listener):
        self._store = store
        self._listener = listener

    @property
    def active(self) -> bool:
        return self._listener.active

    def requery(self, query: Query) -> None:
        """
        Move a live window to `query` and deliver its snapshot right away.
        The subscription keeps its place in the delivery order.
        """
        if self._listener.query is None:
            raise ValueError("only query subscriptions can be re-pointed")
        if not self._listener.active:
            return
        self._listener.query = query
        self._listener.delivered = False
        self._store._deliver(self._listener)

    def unsubscribe(self) -> None:
        if self._listener.active:
            self._listener.active = False
            self._store._remove_listener(self._listener)


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------

class DocumentStore:
    """
    SQLite-backed document store.

    The connection runs in autocommit mode; every write goes through
    transaction(), which issues BEGIN IMMEDIATE so read-modify-write sequences
    (increment, ledger write + balance update) are serialized against other
    connections to the same file.
    """

    def __init__(self, db_path: str | Path, *, timeout: float = FETCH_TIMEOUT_SECONDS):
        self.db_path = str(db_path)
        try:
            self.conn = sqlite3.connect(self.db_path, timeout=timeout, isolation_level=None)
            self.conn.execute("PRAGMA foreign_keys=ON;")
            if self.db_path != ":memory:":
                self.conn.execute("PRAGMA journal_mode=WAL;")
            apply_schema(self.conn)
            self._data_version = self._read_data_version()
        except sqlite3.Error as e:
            _log.exception("could not open store at %s", self.db_path)
            raise StoreError(f"Could not open the database: {e}") from e
        self._closed = False
        self._tx_depth = 0
        self._touched: set[str] = set()
        self._listeners: List[_Listener] = []
        self._last_ts: Optional[datetime] = None

    # ---------------- connection / errors ---------------- #

    @contextmanager
    def _errors(self, action: str) -> Iterator[None]:
        if self._closed:
            raise StoreError("The database is closed.", retryable=False)
        try:
            yield
        except sqlite3.OperationalError as e:
            msg = str(e).lower()
            if "locked" in msg or "busy" in msg:
                _log.warning("store %s timed out: %s", action, e)
                raise StoreError(f"Timed out while trying to {action}. Please try again.") from e
            _log.exception("store %s failed", action)
            raise StoreError(f"Failed to {action}. Please try again.") from e
        except sqlite3.Error as e:
            _log.exception("store %s failed", action)
            raise StoreError(f"Failed to {action}. Please try again.") from e

    def _read_data_version(self) -> int:
        return int(self.conn.execute("PRAGMA data_version;").fetchone()[0])

    def now_iso(self) -> str:
        """UTC timestamp, strictly increasing for this store instance."""
        now = datetime.now(timezone.utc)
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now.isoformat(timespec="microseconds")

    @staticmethod
    def new_id() -> str:
        return uuid4().hex

    # ---------------- transactions ---------------- #

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextmanager
    def transaction(self) -> Iterator["DocumentStore"]:
        """
        Group writes into one atomic unit. Nested calls join the outer
        transaction. Subscribers are notified once, after the outermost commit;
        a rollback notifies nobody.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        with self._errors("start a transaction"):
            self.conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self._tx_depth = 0
            self._touched.clear()
            try:
                self.conn.rollback()
            except sqlite3.Error:
                _log.exception("rollback failed")
            raise
        self._tx_depth = 0
        try:
            with self._errors("save changes"):
                self.conn.commit()
        except StoreError:
            self._touched.clear()
            try:
                self.conn.rollback()
            except sqlite3.Error:
                _log.exception("rollback failed")
            raise
        touched, self._touched = self._touched, set()
        self._notify(touched)

    # ---------------- reads ---------------- #

    def _select(self, query: Query, after: Optional[Cursor] = None) -> Tuple[List[Document], Tuple, Optional[Cursor]]:
        expr = f"COALESCE(json_extract(data, '{_field_path(query.order_by)}'), '')"
        where = ["collection = ?"]
        params: list = [query.collection]
        for name, value in query.filters:
            where.append(f"json_extract(data, '{_field_path(name)}') = ?")
            params.append(value)
        op = "<" if query.direction == "desc" else ">"
        if after is not None:
            where.append(f"({expr} {op} ? OR ({expr} = ? AND doc_id {op} ?))")
            params += [after[0], after[0], after[1]]
        if query.until is not None:
            back = ">" if query.direction == "desc" else "<"
            where.append(f"({expr} {back} ? OR ({expr} = ? AND doc_id {back}= ?))")
            params += [query.until[0], query.until[0], query.until[1]]
        order = "DESC" if query.direction == "desc" else "ASC"
        sql = (
            f"SELECT doc_id, data, {expr} AS sort_value FROM documents "
            f"WHERE {' AND '.join(where)} "
            f"ORDER BY sort_value {order}, doc_id {order}"
        )
        if query.page_size is not None:
            sql += " LIMIT ?"
            params.append(query.page_size)

        with self._errors(f"load {query.collection}"):
            rows = self.conn.execute(sql, params).fetchall()

        docs = [{**json.loads(r[1]), "id": r[0]} for r in rows]
        fingerprint = tuple((r[0], r[1]) for r in rows)
        cursor = (rows[-1][2], rows[-1][0]) if rows else None
        return docs, fingerprint, cursor

    def query(self, query: Query, after: Optional[Cursor] = None) -> Page:
        """One ordered page; pass the previous page's cursor as `after` for the next one."""
        docs, _, cursor = self._select(query, after)
        return Page(docs=docs, cursor=cursor, page_size=query.page_size)

    def find(self, collection: str, filters: Iterable[Filter] = ()) -> List[Document]:
        """All documents of a collection matching the equality filters, newest first."""
        return self.query(Query(collection, filters=tuple(filters))).docs

    def _get_raw(self, collection: str, doc_id: str) -> Optional[str]:
        with self._errors(f"load {collection}/{doc_id}"):
            row = self.conn.execute(
                "SELECT data FROM documents WHERE collection=? AND doc_id=?",
                (collection, doc_id),
            ).fetchone()
        return row[0] if row else None

    def get_one(self, collection: str, doc_id: str) -> Optional[Document]:
        raw = self._get_raw(collection, doc_id)
        return None if raw is None else {**json.loads(raw), "id": doc_id}

    # ---------------- writes ---------------- #

    def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or self.new_id()
        body = {k: v for k, v in data.items() if k != "id"}
        with self.transaction():
            with self._errors(f"create {collection} document"):
                self.conn.execute(
                    "INSERT INTO documents(collection, doc_id, data) VALUES (?,?,?)",
                    (collection, doc_id, _dump(body)),
                )
            self._touched.add(collection)
        return doc_id

    def update(self, collection: str, doc_id: str, partial: Dict[str, Any]) -> Document:
        """Merge top-level fields into an existing document (raises DocumentNotFoundError)."""
        with self.transaction():
            raw = self._get_raw(collection, doc_id)
            if raw is None:
                raise DocumentNotFoundError(collection, doc_id)
            merged = {**json.loads(raw), **{k: v for k, v in partial.items() if k != "id"}}
            with self._errors(f"update {collection}/{doc_id}"):
                self.conn.execute(
                    "UPDATE documents SET data=? WHERE collection=? AND doc_id=?",
                    (_dump(merged), collection, doc_id),
                )
            self._touched.add(collection)
        return {**json.loads(_dump(merged)), "id": doc_id}

    def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document; deleting a missing id is a no-op that returns False."""
        with self.transaction():
            with self._errors(f"delete {collection}/{doc_id}"):
                cur = self.conn.execute(
                    "DELETE FROM documents WHERE collection=? AND doc_id=?",
                    (collection, doc_id),
                )
            if cur.rowcount:
                self._touched.add(collection)
        return bool(cur.rowcount)

    def increment(self, collection: str, doc_id: str, field_name: str, delta) -> Decimal:
        """
        Atomically add `delta` to a numeric field and return the new value.
        Runs inside BEGIN IMMEDIATE, so concurrent incrementers cannot lose
        each other's updates.
        """
        _field_path(field_name)
        with self.transaction():
            raw = self._get_raw(collection, doc_id)
            if raw is None:
                raise DocumentNotFoundError(collection, doc_id)
            body = json.loads(raw)
            current = body.get(field_name)
            new_value = Decimal(str(current if current is not None else 0)) + Decimal(str(delta))
            body[field_name] = new_value
            with self._errors(f"update {collection}/{doc_id}"):
                self.conn.execute(
                    "UPDATE documents SET data=? WHERE collection=? AND doc_id=?",
                    (_dump(body), collection, doc_id),
                )
            self._touched.add(collection)
        return new_value

    # ---------------- subscriptions ---------------- #

    def subscribe(
        self,
        query: Query,
        on_snapshot: Callable[[Page], None],
        on_error: Optional[Callable[[StoreError], None]] = None,
    ) -> Subscription:
        """
        Live window over `query` (first page when page_size is set).
        The current snapshot is delivered before this returns.
        """
        listener = _Listener(query.collection, on_snapshot, on_error, query=query)
        self._listeners.append(listener)
        self._deliver(listener)
        return Subscription(self, listener)

    def watch_document(
        self,
        collection: str,
        doc_id: str,
        on_snapshot: Callable[[Optional[Document]], None],
        on_error: Optional[Callable[[StoreError], None]] = None,
    ) -> Subscription:
        listener = _Listener(collection, on_snapshot, on_error, doc_id=doc_id)
        self._listeners.append(listener)
        self._deliver(listener)
        return Subscription(self, listener)

    def _remove_listener(self, listener: _Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _deliver(self, listener: _Listener) -> None:
        if not listener.active:
            return
        try:
            if listener.query is not None:
                docs, fingerprint, cursor = self._select(listener.query)
                payload: Any = Page(docs=docs, cursor=cursor, page_size=listener.query.page_size)
            else:
                raw = self._get_raw(listener.collection, listener.doc_id)
                fingerprint = raw if raw is not None else _MISSING
                payload = None if raw is None else {**json.loads(raw), "id": listener.doc_id}
        except StoreError as e:
            if listener.on_error is not None:
                listener.on_error(e)
            else:
                _log.error("snapshot for %s failed: %s", listener.collection, e)
            return

        if listener.delivered and listener.fingerprint == fingerprint:
            return
        listener.fingerprint = fingerprint
        listener.delivered = True
        listener.on_snapshot(payload)

    def _notify(self, collections: set[str] | None) -> None:
        for listener in list(self._listeners):
            if collections is None or listener.collection in collections:
                self._deliver(listener)

    def poll_external_changes(self) -> bool:
        """
        Re-deliver snapshots if another connection committed since the last
        check. Returns True when a change was detected.
        """
        with self._errors("check for changes"):
            version = self._read_data_version()
        if version == self._data_version:
            return False
        self._data_version = version
        self._notify(None)
        return True

    def close(self) -> None:
        if self._closed:
            return
        for listener in self._listeners:
            listener.active = False
        self._listeners.clear()
        self._closed = True
        self.conn.close()
