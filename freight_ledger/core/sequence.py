"""
Partitioned sequence allocation.

Issues gap-free, strictly increasing integers per partition key (for
example one run per calendar day). The counter row lives in the store
that owns the numbered collection, and the read/seed/increment of one
allocation runs inside a single write transaction on that store, so the
result holds across threads and processes alike.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Optional

from freight_ledger.storage.db import connect, is_unique_violation, transaction
from freight_ledger.storage.models import SequenceCounter

logger = logging.getLogger(__name__)

# Returns the highest sequence already used under a partition, if any.
Backfill = Callable[[sqlite3.Connection, str], Optional[int]]


class SequenceAllocator:
    """Allocates the next value of a per-partition sequence.

    When the counter for a partition does not exist yet, it is seeded
    from `backfill` so that rows written before the counter existed are
    never numbered twice.

    Usage:
        allocator = SequenceAllocator("shipment.db", "shipment")
        seq = allocator.allocate("250101")
    """

    def __init__(self, db_path: str, scope: str, backfill: Optional[Backfill] = None):
        self.db_path = db_path
        self.scope = scope
        self.backfill = backfill

    def allocate(self, partition_key: str) -> int:
        """Return the next value for `partition_key`, starting at 1.

        Raises:
            TransientStorageError: If the owning store is unreachable or
                stays locked past its timeout; no value was allocated.
        """
        with transaction(self.db_path) as conn:
            seq = self._allocate(conn, partition_key)
        logger.debug(f"[SEQ] {self.scope}/{partition_key} -> {seq}")
        return seq

    def current(self, partition_key: str) -> Optional[int]:
        """Return the last value allocated for `partition_key`, if any."""
        counter = self.counter(partition_key)
        return counter.seq if counter else None

    def counter(self, partition_key: str) -> Optional[SequenceCounter]:
        with connect(self.db_path) as conn:
            seq = self._read(conn, partition_key)
        if seq is None:
            return None
        return SequenceCounter(scope=self.scope, partition_key=partition_key, seq=seq)

    def _allocate(self, conn: sqlite3.Connection, partition_key: str) -> int:
        if self._read(conn, partition_key) is None:
            initial = self._seed(conn, partition_key)
            try:
                conn.execute(
                    "INSERT INTO sequence_counter (scope, partition_key, seq, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (self.scope, partition_key, initial, datetime.now().isoformat())
                )
                return initial
            except sqlite3.IntegrityError as e:
                if not is_unique_violation(e, "sequence_counter", "partition_key"):
                    raise
                logger.info(
                    f"[SEQ] {self.scope}/{partition_key} counter created concurrently, incrementing"
                )

        conn.execute(
            "UPDATE sequence_counter SET seq = seq + 1, updated_at = ? "
            "WHERE scope = ? AND partition_key = ?",
            (datetime.now().isoformat(), self.scope, partition_key)
        )
        return self._read(conn, partition_key)

    def _read(self, conn: sqlite3.Connection, partition_key: str) -> Optional[int]:
        row = conn.execute(
            "SELECT seq FROM sequence_counter WHERE scope = ? AND partition_key = ?",
            (self.scope, partition_key)
        ).fetchone()
        return row["seq"] if row else None

    def _seed(self, conn: sqlite3.Connection, partition_key: str) -> int:
        if self.backfill is None:
            return 1
        highest = self.backfill(conn, partition_key)
        if highest is None:
            return 1
        logger.info(f"[SEQ] {self.scope}/{partition_key} seeded after existing sequence {highest}")
        return highest + 1
