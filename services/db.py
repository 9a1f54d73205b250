import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock

from config import REIMBURSEMENT_DB_PATH

logger = logging.getLogger(__name__)
DB_PATH = Path(REIMBURSEMENT_DB_PATH)

DOCUMENTS_TABLE = "scope_documents"
LEDGER_SNAPSHOTS_TABLE = "ledger_snapshots"

# One document row per (kind, scope); ledger snapshots are append-only.
# Writers hold _db_write_lock in-process and BEGIN IMMEDIATE across processes.

_db_write_lock = Lock()
_db_timeout = 10  # seconds


@contextmanager
def get_db_connection():
    """
    Context manager for a SQLite connection to the reimbursement store.
    - Enforces timeout to prevent infinite waits
    - Enables WAL mode for better concurrency
    - Ensures cleanup even on exception
    """
    conn = None
    try:
        conn = sqlite3.connect(DB_PATH, timeout=_db_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        yield conn
    except sqlite3.DatabaseError as e:
        logger.error("[DB] Database error: %s", e, exc_info=True)
        raise
    finally:
        if conn:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning("[DB] Error closing connection: %s", e)


@contextmanager
def write_transaction():
    """
    Open a connection holding the SQLite write lock for the whole block.

    BEGIN IMMEDIATE makes a read-then-write sequence atomic across processes;
    the block commits on success and rolls back on any exception.
    """
    with _db_write_lock:
        with get_db_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise


def execute_write(sql: str, params: tuple = (), commit: bool = True):
    """
    Serialize all write operations to prevent SQLITE_BUSY errors.

    Args:
        sql: SQL statement to execute
        params: Tuple of parameters for the statement
        commit: Whether to auto-commit (default True)
    """
    with _db_write_lock:
        with get_db_connection() as conn:
            try:
                cur = conn.execute(sql, params)
                if commit:
                    conn.commit()
                return cur.lastrowid
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e):
                    logger.error("[DB] Database locked after %ss timeout: %s", _db_timeout, e)
                raise
            except sqlite3.Error as exc:
                logger.error("[DB] Write failed for SQL: %s params=%s: %s", sql, params, exc, exc_info=True)
                raise


def ensure_reimbursement_tables() -> None:
    """
    Create the scope document and ledger snapshot tables if they do not exist.

    scope_documents holds one JSON document per (user, country, region, kind) and is
    replaced wholesale on write. ledger_snapshots is append-only; readers take the
    most recent fetch.
    """
    documents_sql = f"""
    CREATE TABLE IF NOT EXISTS {DOCUMENTS_TABLE} (
        user_id TEXT NOT NULL,
        country TEXT NOT NULL,
        region TEXT NOT NULL,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, country, region, kind)
    )
    """
    ledger_sql = f"""
    CREATE TABLE IF NOT EXISTS {LEDGER_SNAPSHOTS_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        country TEXT NOT NULL,
        region TEXT NOT NULL,
        fetched_at TEXT NOT NULL,
        row_count INTEGER NOT NULL,
        payload TEXT NOT NULL
    )
    """
    index_sql = f"""
    CREATE INDEX IF NOT EXISTS idx_ledger_snapshots_scope
    ON {LEDGER_SNAPSHOTS_TABLE} (user_id, country, region, fetched_at)
    """
    try:
        execute_write(documents_sql)
        execute_write(ledger_sql)
        execute_write(index_sql)
        logger.debug("[DB] reimbursement tables ensured at %s", DB_PATH)
    except sqlite3.Error as exc:
        logger.error("[DB] Failed to ensure reimbursement tables: %s", exc, exc_info=True)
        raise
