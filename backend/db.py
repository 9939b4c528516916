"""
SQLite connection helpers for the conversation store and SQL tools.

The store keeps one long-lived WAL connection; tool queries open short-lived
connections against whatever database file the catalog points at. Both use a
5-second busy timeout.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


def configure_connection(conn: sqlite3.Connection, wal: bool = True):
    """Apply standard connection settings: busy timeout, foreign keys, WAL mode."""
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA foreign_keys = ON")
    if wal:
        conn.execute("PRAGMA journal_mode = WAL")


def open_connection(db_path: str) -> sqlite3.Connection:
    """Open a long-lived connection shared across asyncio tasks.

    In-memory databases (":memory:") skip WAL, which SQLite does not
    support for them.
    """
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    configure_connection(conn, wal=db_path != ":memory:")
    return conn


@contextmanager
def db_connection_row(db_path: str):
    """Context manager that returns a short-lived connection with Row factory.
    Used by tool executions against externally configured databases.
    Uses URI mode so a missing database file is an error, not a new file."""
    conn = sqlite3.connect(f"file:{db_path}?mode=rw", uri=True)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    try:
        yield conn
    finally:
        conn.close()
