"""
Database connection management.

Provides SQLite connections and write transactions for each store.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from freight_ledger.core.errors import TransientStorageError

BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str) -> sqlite3.Connection:
    """Create and return a SQLite connection for one store.

    The connection runs in autocommit mode so that transactions are opened
    explicitly by `transaction`.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign keys enabled and row access by name

    Raises:
        TransientStorageError: If the database file cannot be opened
    """
    path = Path(db_path)
    try:
        conn = sqlite3.connect(
            str(path),
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
            check_same_thread=False,
        )
    except sqlite3.OperationalError as e:
        raise TransientStorageError(f"Store {db_path} is unreachable: {e}") from e
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """Yield a connection for reads, translating driver failures."""
    conn = get_connection(db_path)
    try:
        yield conn
    except sqlite3.OperationalError as e:
        raise TransientStorageError(f"Store {db_path} failed: {e}") from e
    finally:
        conn.close()


@contextmanager
def transaction(db_path: str) -> Iterator[sqlite3.Connection]:
    """Run the body inside one isolated write transaction on a store.

    `BEGIN IMMEDIATE` takes the store's write lock before the first read,
    so read-modify-write sequences are serialized across processes.
    Any exception rolls the transaction back and propagates.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()
    except sqlite3.OperationalError as e:
        raise TransientStorageError(f"Store {db_path} failed: {e}") from e
    finally:
        conn.close()


def is_unique_violation(error: sqlite3.IntegrityError, table: str, column: str) -> bool:
    """Check whether an integrity error is a duplicate key on `table.column`."""
    message = str(error)
    return "UNIQUE constraint failed" in message and f"{table}.{column}" in message
