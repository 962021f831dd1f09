from pathlib import Path
import sqlite3
import sys

from ..utils.loggers import get_logger

SQL = r"""
PRAGMA foreign_keys = ON;

/* ======================== DOCUMENTS ======================== */

/*
  One row per document. `collection` is the full collection path:
    shops
    shops/<shopId>/products
    shops/<shopId>/sales
    shops/<shopId>/payments
    shops/<shopId>/products/<productId>/sales
  `data` is the JSON body (money written as decimal strings).
*/
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    doc_id     TEXT NOT NULL,
    data       TEXT NOT NULL CHECK (json_valid(data)),
    PRIMARY KEY (collection, doc_id)
);

/* ordered scans used by the paginated streams */
CREATE INDEX IF NOT EXISTS idx_documents_date
ON documents(collection, json_extract(data, '$.date'), doc_id);

CREATE INDEX IF NOT EXISTS idx_documents_created
ON documents(collection, json_extract(data, '$.createdAt'), doc_id);

/* payment lookup by sale */
CREATE INDEX IF NOT EXISTS idx_documents_sale
ON documents(collection, json_extract(data, '$.saleId'));
"""


def apply_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SQL)


def init_schema(db_path: Path | str = "record_track.db") -> None:
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.execute("PRAGMA journal_mode=WAL;")
        apply_schema(conn)
        conn.commit()
    get_logger().info("schema applied to %s", db_path)


if __name__ == "__main__":
    # python -m record_track.database.schema [db_path]
    target = sys.argv[1] if len(sys.argv) > 1 else Path(__file__).resolve().parents[1] / "data" / "record_track.db"
    init_schema(target)
