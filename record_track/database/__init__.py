# database/__init__.py
from __future__ import annotations

from pathlib import Path

from ..constants import SCHEMA_VERSION
from .document_store import DocumentStore, Page, Query, Subscription, collection_path
from .errors import (
    ConsistencyWarning,
    DocumentNotFoundError,
    DomainError,
    DuplicatePaymentError,
    StoreError,
    ValidationError,
)
from .versioning import ensure_version


def get_store(db_path: str | Path | None = None) -> DocumentStore:
    """
    Returns a DocumentStore with:
      - WAL mode
      - the documents schema applied (idempotent: CREATE IF NOT EXISTS)
      - the schema version recorded
    Defaults to config.DB_PATH.
    """
    if db_path is None:
        from ..config import DB_PATH
        db_path = DB_PATH
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    store = DocumentStore(db_path)
    with store.transaction():
        ensure_version(store.conn, SCHEMA_VERSION)
    return store


__all__ = [
    "get_store",
    "DocumentStore",
    "Page",
    "Query",
    "Subscription",
    "collection_path",
    "ConsistencyWarning",
    "DocumentNotFoundError",
    "DomainError",
    "DuplicatePaymentError",
    "StoreError",
    "ValidationError",
]
