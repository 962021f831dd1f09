import logging
import sqlite3

from ..constants import TABLE_SCHEMA_VERSION

_log = logging.getLogger(__name__)


def _ensure_table(conn: sqlite3.Connection):
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {TABLE_SCHEMA_VERSION}(
            id INTEGER PRIMARY KEY CHECK (id=1),
            version TEXT NOT NULL
        );
    """)


def get_current_version(conn: sqlite3.Connection) -> str | None:
    _ensure_table(conn)
    row = conn.execute(f"SELECT version FROM {TABLE_SCHEMA_VERSION} WHERE id=1;").fetchone()
    return row[0] if row else None


def set_current_version(conn: sqlite3.Connection, version: str):
    """Upsert the single version row. The caller owns the transaction."""
    _ensure_table(conn)
    conn.execute(
        f"INSERT INTO {TABLE_SCHEMA_VERSION}(id, version) VALUES (1, ?) "
        f"ON CONFLICT(id) DO UPDATE SET version=excluded.version;",
        (version,),
    )


def ensure_version(conn: sqlite3.Connection, version: str) -> bool:
    """Record `version` if the database carries another one. Returns True when it changed."""
    current = get_current_version(conn)
    if current == version:
        return False
    if current is None:
        _log.info("new document store, schema version %s", version)
    else:
        _log.info("document store schema %s -> %s", current, version)
    set_current_version(conn, version)
    return True
