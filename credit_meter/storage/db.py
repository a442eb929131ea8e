"""
Database connection management.

Provides SQLite connections for the ledger, cache and scoped result tables.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "credit_meter.db"

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection configured for concurrent use.

    Every call opens a fresh connection, so connections are never shared
    between threads. WAL journaling lets readers proceed while a writer
    holds the reserved lock.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with WAL journaling and a busy timeout
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
