"""
Repository pattern for data access.

One repository per store. Every method accepts an optional open
connection so that callers can group several calls into a single
`transaction`; without one, the method opens and closes its own.
"""

import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional, Sequence, Set

from freight_ledger.config.loader import StoreConfig
from .db import connect, transaction
from .models import (
    Application,
    ApplicationStatus,
    Cost,
    CostStatus,
    CostType,
    Party,
    PartyKind,
    Shipment,
)


MAIN_SCHEMA = """
    CREATE TABLE IF NOT EXISTS customer (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS supplier (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL
    );
"""

SEQUENCE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS sequence_counter (
        scope TEXT NOT NULL,
        partition_key TEXT NOT NULL,
        seq INTEGER NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (scope, partition_key)
    );
"""

SHIPMENT_SCHEMA = """
    CREATE TABLE IF NOT EXISTS shipment (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        bl_number TEXT,
        created_at TEXT NOT NULL
    );
""" + SEQUENCE_SCHEMA

FINANCE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS shipment_cost (
        id TEXT PRIMARY KEY,
        shipment_id TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'unapplied',
        amount TEXT,
        currency TEXT,
        description TEXT,
        financial_subject_id INTEGER,
        settlement_unit_type TEXT,
        settlement_unit_id TEXT,
        remarks TEXT,
        application_number TEXT,
        application_date TEXT,
        due_date TEXT,
        application_remarks TEXT,
        settlement_date TEXT,
        settlement_remarks TEXT,
        created_at TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_cost_shipment ON shipment_cost (shipment_id);
    CREATE INDEX IF NOT EXISTS idx_cost_application ON shipment_cost (application_number);
    CREATE TABLE IF NOT EXISTS expense_application (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        application_number TEXT NOT NULL UNIQUE,
        type TEXT NOT NULL,
        total_amount TEXT NOT NULL,
        currency TEXT NOT NULL,
        cost_count INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        due_date TEXT,
        remarks TEXT,
        canceled_at TEXT,
        created_at TEXT NOT NULL
    );
""" + SEQUENCE_SCHEMA


def initialize_schema(stores: StoreConfig) -> None:
    """Create the tables of every store if they don't exist.

    Args:
        stores: Database file of each store
    """
    for db_path, script in (
        (stores.main, MAIN_SCHEMA),
        (stores.shipment, SHIPMENT_SCHEMA),
        (stores.finance, FINANCE_SCHEMA),
    ):
        with connect(db_path) as conn:
            conn.executescript(script)


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value not in (None, "") else None


class _Repository:
    """Shared connection handling for the store repositories."""

    def __init__(self, db_path: str):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _reading(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with connect(self.db_path) as own:
                yield own

    @contextmanager
    def _writing(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
        else:
            with transaction(self.db_path) as own:
                yield own


class MasterDataRepository(_Repository):
    """Customers and suppliers in the main store."""

    def insert_party(self, party: Party, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                f"INSERT INTO {party.kind.value} (id, code, name, created_at) VALUES (?, ?, ?, ?)",
                (party.id, party.code, party.name, party.created_at.isoformat())
            )

    def find_unique(
        self,
        kind: PartyKind,
        code: str,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Party]:
        """Look up a customer or supplier by its business code."""
        with self._reading(conn) as c:
            row = c.execute(
                f"SELECT id, code, name, created_at FROM {kind.value} WHERE code = ?",
                (code,)
            ).fetchone()
        if row is None:
            return None
        return Party(
            id=row["id"],
            code=row["code"],
            name=row["name"],
            kind=kind,
            created_at=datetime.fromisoformat(row["created_at"])
        )


class ShipmentRepository(_Repository):
    """Shipments in the shipment store."""

    def insert_shipment(self, shipment: Shipment, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                "INSERT INTO shipment (id, code, bl_number, created_at) VALUES (?, ?, ?, ?)",
                (shipment.id, shipment.code, shipment.bl_number, shipment.created_at.isoformat())
            )

    def get_shipment(
        self,
        shipment_id: str,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Shipment]:
        with self._reading(conn) as c:
            row = c.execute(
                "SELECT id, code, bl_number, created_at FROM shipment WHERE id = ?",
                (shipment_id,)
            ).fetchone()
        if row is None:
            return None
        return Shipment(
            id=row["id"],
            code=row["code"],
            bl_number=row["bl_number"],
            created_at=datetime.fromisoformat(row["created_at"])
        )

    def exists(self, shipment_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        with self._reading(conn) as c:
            row = c.execute("SELECT 1 FROM shipment WHERE id = ?", (shipment_id,)).fetchone()
        return row is not None

    def list_ids(self, conn: Optional[sqlite3.Connection] = None) -> Set[str]:
        """Return the ids of every shipment currently present."""
        with self._reading(conn) as c:
            return {row["id"] for row in c.execute("SELECT id FROM shipment")}

    def existing_ids(
        self,
        shipment_ids: Sequence[str],
        conn: Optional[sqlite3.Connection] = None
    ) -> Set[str]:
        """Return the subset of `shipment_ids` that is present."""
        if not shipment_ids:
            return set()
        with self._reading(conn) as c:
            rows = c.execute(
                f"SELECT id FROM shipment WHERE id IN ({_placeholders(shipment_ids)})",
                list(shipment_ids)
            )
            return {row["id"] for row in rows}

    def list_codes(self, conn: Optional[sqlite3.Connection] = None) -> List[str]:
        with self._reading(conn) as c:
            return [row["code"] for row in c.execute("SELECT code FROM shipment ORDER BY code")]

    def latest_code_with_prefix(
        self,
        prefix: str,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[str]:
        """Return the highest shipment code starting with `prefix`, if any."""
        with self._reading(conn) as c:
            row = c.execute(
                "SELECT code FROM shipment WHERE substr(code, 1, ?) = ? ORDER BY code DESC LIMIT 1",
                (len(prefix), prefix)
            ).fetchone()
        return row["code"] if row else None

    def delete_shipments(
        self,
        shipment_ids: Sequence[str],
        conn: Optional[sqlite3.Connection] = None
    ) -> int:
        if not shipment_ids:
            return 0
        with self._writing(conn) as c:
            cursor = c.execute(
                f"DELETE FROM shipment WHERE id IN ({_placeholders(shipment_ids)})",
                list(shipment_ids)
            )
            return cursor.rowcount


_COST_COLUMNS = (
    "id, shipment_id, type, status, amount, currency, description, "
    "financial_subject_id, settlement_unit_type, settlement_unit_id, remarks, "
    "application_number, application_date, due_date, application_remarks, "
    "settlement_date, settlement_remarks, created_at"
)

_APPLICATION_COLUMNS = (
    "application_number, type, total_amount, currency, cost_count, status, "
    "due_date, remarks, canceled_at, created_at"
)


def _row_to_cost(row: sqlite3.Row) -> Cost:
    unit_type = row["settlement_unit_type"]
    return Cost(
        id=row["id"],
        shipment_id=row["shipment_id"],
        type=CostType(row["type"]),
        status=CostStatus(row["status"]),
        amount=_decimal(row["amount"]),
        currency=row["currency"],
        description=row["description"],
        financial_subject_id=row["financial_subject_id"],
        settlement_unit_type=PartyKind(unit_type) if unit_type else None,
        settlement_unit_id=row["settlement_unit_id"],
        remarks=row["remarks"],
        application_number=row["application_number"],
        application_date=_datetime(row["application_date"]),
        due_date=_date(row["due_date"]),
        application_remarks=row["application_remarks"],
        settlement_date=_datetime(row["settlement_date"]),
        settlement_remarks=row["settlement_remarks"],
        created_at=datetime.fromisoformat(row["created_at"])
    )


def _row_to_application(row: sqlite3.Row) -> Application:
    return Application(
        application_number=row["application_number"],
        type=CostType(row["type"]),
        total_amount=Decimal(row["total_amount"]),
        currency=row["currency"],
        cost_count=row["cost_count"],
        status=ApplicationStatus(row["status"]),
        due_date=_date(row["due_date"]),
        remarks=row["remarks"],
        canceled_at=_datetime(row["canceled_at"]),
        created_at=datetime.fromisoformat(row["created_at"])
    )


class FinanceRepository(_Repository):
    """Costs and expense applications in the finance store."""

    # Costs

    def insert_cost(self, cost: Cost, conn: Optional[sqlite3.Connection] = None) -> None:
        with self._writing(conn) as c:
            c.execute(
                f"INSERT INTO shipment_cost ({_COST_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    cost.id,
                    cost.shipment_id,
                    cost.type.value,
                    cost.status.value,
                    str(cost.amount) if cost.amount is not None else None,
                    cost.currency,
                    cost.description,
                    cost.financial_subject_id,
                    cost.settlement_unit_type.value if cost.settlement_unit_type else None,
                    cost.settlement_unit_id,
                    cost.remarks,
                    cost.application_number,
                    _iso(cost.application_date),
                    _iso(cost.due_date),
                    cost.application_remarks,
                    _iso(cost.settlement_date),
                    cost.settlement_remarks,
                    cost.created_at.isoformat()
                )
            )

    def update_cost_details(self, cost: Cost, conn: Optional[sqlite3.Connection] = None) -> int:
        """Store the editable fields of `cost`; lifecycle fields are left alone."""
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE shipment_cost SET description = ?, amount = ?, currency = ?, "
                "financial_subject_id = ?, settlement_unit_type = ?, settlement_unit_id = ?, "
                "remarks = ? WHERE id = ?",
                (
                    cost.description,
                    str(cost.amount) if cost.amount is not None else None,
                    cost.currency,
                    cost.financial_subject_id,
                    cost.settlement_unit_type.value if cost.settlement_unit_type else None,
                    cost.settlement_unit_id,
                    cost.remarks,
                    cost.id
                )
            )
            return cursor.rowcount

    def get_cost(self, cost_id: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Cost]:
        costs = self.list_costs(ids=[cost_id], conn=conn)
        return costs[0] if costs else None

    def list_costs(
        self,
        ids: Optional[Iterable[str]] = None,
        shipment_ids: Optional[Iterable[str]] = None,
        application_number: Optional[str] = None,
        status: Optional[CostStatus] = None,
        type: Optional[CostType] = None,
        currency: Optional[str] = None,
        settlement_unit_id: Optional[str] = None,
        financial_subject_id: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> List[Cost]:
        """Fetch costs matching every given filter, oldest first."""
        query = f"SELECT {_COST_COLUMNS} FROM shipment_cost"
        params: list = []
        conditions = []

        if ids is not None:
            ids = list(ids)
            if not ids:
                return []
            conditions.append(f"id IN ({_placeholders(ids)})")
            params.extend(ids)
        if shipment_ids is not None:
            shipment_ids = list(shipment_ids)
            if not shipment_ids:
                return []
            conditions.append(f"shipment_id IN ({_placeholders(shipment_ids)})")
            params.extend(shipment_ids)
        if application_number is not None:
            conditions.append("application_number = ?")
            params.append(application_number)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if type is not None:
            conditions.append("type = ?")
            params.append(type.value)
        if currency is not None:
            conditions.append("currency = ?")
            params.append(currency)
        if settlement_unit_id is not None:
            conditions.append("settlement_unit_id = ?")
            params.append(settlement_unit_id)
        if financial_subject_id is not None:
            conditions.append("financial_subject_id = ?")
            params.append(financial_subject_id)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at, id"

        with self._reading(conn) as c:
            return [_row_to_cost(row) for row in c.execute(query, params)]

    def mark_applied(
        self,
        cost_ids: Sequence[str],
        application_number: str,
        application_date: datetime,
        due_date: date,
        remarks: Optional[str],
        conn: Optional[sqlite3.Connection] = None
    ) -> int:
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE shipment_cost SET status = ?, application_number = ?, "
                "application_date = ?, due_date = ?, application_remarks = ? "
                f"WHERE id IN ({_placeholders(cost_ids)})",
                [
                    CostStatus.APPLIED.value,
                    application_number,
                    application_date.isoformat(),
                    due_date.isoformat(),
                    remarks,
                    *cost_ids
                ]
            )
            return cursor.rowcount

    def unlink_application(
        self,
        cost_ids: Sequence[str],
        conn: Optional[sqlite3.Connection] = None
    ) -> int:
        """Return costs to `unapplied`, clearing application and settlement fields."""
        if not cost_ids:
            return 0
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE shipment_cost SET status = ?, application_number = NULL, "
                "application_date = NULL, due_date = NULL, application_remarks = NULL, "
                "settlement_date = NULL, settlement_remarks = NULL "
                f"WHERE id IN ({_placeholders(cost_ids)})",
                [CostStatus.UNAPPLIED.value, *cost_ids]
            )
            return cursor.rowcount

    def mark_settled(
        self,
        cost_ids: Sequence[str],
        settlement_date: datetime,
        remarks: Optional[str],
        conn: Optional[sqlite3.Connection] = None
    ) -> int:
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE shipment_cost SET status = ?, settlement_date = ?, settlement_remarks = ? "
                f"WHERE id IN ({_placeholders(cost_ids)})",
                [CostStatus.SETTLED.value, settlement_date.isoformat(), remarks, *cost_ids]
            )
            return cursor.rowcount

    def revert_settlement(
        self,
        cost_ids: Sequence[str],
        conn: Optional[sqlite3.Connection] = None
    ) -> int:
        """Return the settled costs among `cost_ids` to `applied`.

        Costs in any other status are left untouched.
        """
        if not cost_ids:
            return 0
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE shipment_cost SET status = ?, settlement_date = NULL, settlement_remarks = NULL "
                f"WHERE status = ? AND id IN ({_placeholders(cost_ids)})",
                [CostStatus.APPLIED.value, CostStatus.SETTLED.value, *cost_ids]
            )
            return cursor.rowcount

    def delete_costs(
        self,
        cost_ids: Sequence[str],
        conn: Optional[sqlite3.Connection] = None
    ) -> int:
        if not cost_ids:
            return 0
        with self._writing(conn) as c:
            cursor = c.execute(
                f"DELETE FROM shipment_cost WHERE id IN ({_placeholders(cost_ids)})",
                list(cost_ids)
            )
            return cursor.rowcount

    # Applications

    def insert_application(
        self,
        application: Application,
        conn: Optional[sqlite3.Connection] = None
    ) -> None:
        with self._writing(conn) as c:
            c.execute(
                f"INSERT INTO expense_application ({_APPLICATION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    application.application_number,
                    application.type.value,
                    str(application.total_amount),
                    application.currency,
                    application.cost_count,
                    application.status.value,
                    _iso(application.due_date),
                    application.remarks,
                    _iso(application.canceled_at),
                    application.created_at.isoformat()
                )
            )

    def get_application(
        self,
        application_number: str,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Application]:
        with self._reading(conn) as c:
            row = c.execute(
                f"SELECT {_APPLICATION_COLUMNS} FROM expense_application WHERE application_number = ?",
                (application_number,)
            ).fetchone()
        return _row_to_application(row) if row else None

    def list_applications(
        self,
        type: Optional[CostType] = None,
        status: Optional[ApplicationStatus] = None,
        created_from: Optional[date] = None,
        created_to: Optional[date] = None,
        conn: Optional[sqlite3.Connection] = None
    ) -> List[Application]:
        """Fetch applications matching every given filter, by number.

        Args:
            type: Receivable or payable
            status: Active or canceled
            created_from: First creation day included
            created_to: Last creation day included
            conn: Open connection to reuse
        """
        query = f"SELECT {_APPLICATION_COLUMNS} FROM expense_application"
        params: list = []
        conditions = []

        if type is not None:
            conditions.append("type = ?")
            params.append(type.value)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if created_from is not None:
            conditions.append("created_at >= ?")
            params.append(datetime.combine(created_from, time.min).isoformat())
        if created_to is not None:
            conditions.append("created_at < ?")
            params.append(datetime.combine(created_to + timedelta(days=1), time.min).isoformat())

        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY application_number"

        with self._reading(conn) as c:
            return [_row_to_application(row) for row in c.execute(query, params)]

    def latest_application_number_between(
        self,
        start: datetime,
        end: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> Optional[str]:
        """Return the highest application number created in `[start, end)`."""
        with self._reading(conn) as c:
            row = c.execute(
                "SELECT application_number FROM expense_application "
                "WHERE created_at >= ? AND created_at < ? "
                "ORDER BY application_number DESC LIMIT 1",
                (start.isoformat(), end.isoformat())
            ).fetchone()
        return row["application_number"] if row else None

    def cancel_application(
        self,
        application_number: str,
        canceled_at: datetime,
        conn: Optional[sqlite3.Connection] = None
    ) -> int:
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE expense_application SET status = ?, canceled_at = ? WHERE application_number = ?",
                (ApplicationStatus.CANCELED.value, canceled_at.isoformat(), application_number)
            )
            return cursor.rowcount

    def update_application_totals(
        self,
        application_number: str,
        total_amount: Decimal,
        currency: str,
        cost_count: int,
        conn: Optional[sqlite3.Connection] = None
    ) -> int:
        with self._writing(conn) as c:
            cursor = c.execute(
                "UPDATE expense_application SET total_amount = ?, currency = ?, cost_count = ? "
                "WHERE application_number = ?",
                (str(total_amount), currency, cost_count, application_number)
            )
            return cursor.rowcount

    def delete_application(
        self,
        application_number: str,
        conn: Optional[sqlite3.Connection] = None
    ) -> int:
        with self._writing(conn) as c:
            cursor = c.execute(
                "DELETE FROM expense_application WHERE application_number = ?",
                (application_number,)
            )
            return cursor.rowcount
