"""
Unit tests for storage layer.

Tests schema creation, cost and application persistence, and transactions.
"""

import sqlite3
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

import pytest

from freight_ledger.core.errors import TransientStorageError
from freight_ledger.storage.db import connect, get_connection, is_unique_violation, transaction
from freight_ledger.storage.models import (
    Application,
    ApplicationStatus,
    CostStatus,
    CostType,
    Shipment,
)
from freight_ledger.storage.repository import (
    FinanceRepository,
    ShipmentRepository,
    initialize_schema,
)


def _tables(db_path):
    with connect(db_path) as conn:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    return {row["name"] for row in rows}


class TestStorageSchema:
    """Test database schema creation for every store."""

    def test_schema_creation(self, stores):
        """Each store gets its own tables and nothing else."""
        assert {"customer", "supplier"} <= _tables(stores.main)
        assert {"shipment", "sequence_counter"} <= _tables(stores.shipment)
        assert {"shipment_cost", "expense_application", "sequence_counter"} <= _tables(stores.finance)
        assert "shipment_cost" not in _tables(stores.shipment)

    def test_schema_creation_is_idempotent(self, stores):
        initialize_schema(stores)
        initialize_schema(stores)
        assert "shipment" in _tables(stores.shipment)


class TestTransactions:
    """Test transaction boundaries and error translation."""

    def test_rollback_on_error(self, stores):
        shipments = ShipmentRepository(stores.shipment)
        with pytest.raises(RuntimeError):
            with transaction(stores.shipment) as conn:
                shipments.insert_shipment(
                    Shipment(id="s1", code="Rsl-250101001", created_at=datetime(2025, 1, 1)),
                    conn=conn
                )
                raise RuntimeError("boom")
        assert shipments.exists("s1") is False

    def test_commit_on_success(self, stores):
        shipments = ShipmentRepository(stores.shipment)
        with transaction(stores.shipment) as conn:
            shipments.insert_shipment(
                Shipment(id="s1", code="Rsl-250101001", created_at=datetime(2025, 1, 1)),
                conn=conn
            )
        assert shipments.exists("s1") is True

    def test_unreachable_store_is_transient(self, tmp_path):
        missing = str(tmp_path / "no" / "such" / "dir" / "store.db")
        with pytest.raises(TransientStorageError):
            with transaction(missing):
                pass

    def test_unique_violation_detection(self, stores):
        shipments = ShipmentRepository(stores.shipment)
        shipments.insert_shipment(Shipment(id="s1", code="Rsl-250101001", created_at=datetime(2025, 1, 1)))
        with pytest.raises(sqlite3.IntegrityError) as exc_info:
            shipments.insert_shipment(
                Shipment(id="s2", code="Rsl-250101001", created_at=datetime(2025, 1, 1))
            )
        assert is_unique_violation(exc_info.value, "shipment", "code")
        assert not is_unique_violation(exc_info.value, "shipment", "id")

    def test_connection_settings(self, stores):
        conn = get_connection(stores.finance)
        try:
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
            assert conn.isolation_level is None
        finally:
            conn.close()


class TestShipmentRepository:
    """Test shipment lookups used by orphan detection and code backfill."""

    def test_latest_code_with_prefix(self, stores):
        shipments = ShipmentRepository(stores.shipment)
        for i, code in enumerate(["Rsl-250101003", "Rsl-250101010", "Rsl-250102001"]):
            shipments.insert_shipment(Shipment(id=f"s{i}", code=code, created_at=datetime(2025, 1, 1)))

        assert shipments.latest_code_with_prefix("Rsl-250101") == "Rsl-250101010"
        assert shipments.latest_code_with_prefix("Rsl-250103") is None
        assert shipments.list_ids() == {"s0", "s1", "s2"}
        assert shipments.existing_ids(["s1", "missing"]) == {"s1"}
        assert shipments.existing_ids([]) == set()

    def test_delete_shipments(self, stores):
        shipments = ShipmentRepository(stores.shipment)
        shipments.insert_shipment(Shipment(id="s1", code="Rsl-250101001", created_at=datetime(2025, 1, 1)))
        assert shipments.delete_shipments(["s1", "missing"]) == 1
        assert shipments.delete_shipments([]) == 0
        assert shipments.get_shipment("s1") is None


class TestFinanceRepository:
    """Test cost and application persistence."""

    def test_cost_fields_survive_storage(self, ledger, shipment, add_cost):
        cost = add_cost(shipment.id, amount="1234.56", currency="USD", type=CostType.RECEIVABLE)
        stored = ledger.finance.get_cost(cost.id)

        assert stored == cost
        assert stored.amount == Decimal("1234.56")
        assert isinstance(stored.amount, Decimal)

    def test_filters(self, ledger, shipment, add_cost):
        a = add_cost(shipment.id)
        add_cost(shipment.id, status=CostStatus.APPLIED, application_number="F250101001")
        add_cost("other-shipment")

        assert [c.id for c in ledger.finance.list_costs(status=CostStatus.UNAPPLIED, shipment_ids=[shipment.id])] == [a.id]
        assert len(ledger.finance.list_costs(application_number="F250101001")) == 1
        assert ledger.finance.list_costs(ids=[]) == []
        assert len(ledger.finance.list_costs()) == 3

    def test_detail_filters(self, ledger, shipment, add_cost):
        usd = add_cost(shipment.id, currency="USD", type=CostType.RECEIVABLE, settlement_unit_id="customer-4")
        thb = add_cost(shipment.id, financial_subject_id=8)

        assert ledger.finance.list_costs(type=CostType.RECEIVABLE) == [usd]
        assert ledger.finance.list_costs(currency="THB") == [thb]
        assert ledger.finance.list_costs(settlement_unit_id="customer-4") == [usd]
        assert ledger.finance.list_costs(financial_subject_id=8) == [thb]
        assert ledger.finance.list_costs(currency="USD", type=CostType.PAYABLE) == []

    def test_update_cost_details(self, ledger, shipment, add_cost):
        cost = add_cost(shipment.id, status=CostStatus.APPLIED, application_number="F250101001")
        edited = replace(cost, amount=Decimal("75.25"), description="Storage", remarks="edited")

        assert ledger.finance.update_cost_details(edited) == 1
        stored = ledger.finance.get_cost(cost.id)
        assert stored == edited
        assert stored.application_number == "F250101001"

    def test_revert_settlement_only_touches_settled(self, ledger, shipment, add_cost):
        settled = add_cost(
            shipment.id,
            status=CostStatus.SETTLED,
            application_number="F250101001",
            settlement_date=datetime(2025, 1, 2),
            settlement_remarks="paid"
        )
        applied = add_cost(shipment.id, status=CostStatus.APPLIED, application_number="F250101001")

        assert ledger.finance.revert_settlement([settled.id, applied.id]) == 1
        reverted = ledger.finance.get_cost(settled.id)
        assert reverted.status == CostStatus.APPLIED
        assert reverted.settlement_date is None
        assert reverted.settlement_remarks is None

    def test_application_round_trip_and_date_range(self, stores):
        finance = FinanceRepository(stores.finance)
        application = Application(
            application_number="F250101002",
            type=CostType.PAYABLE,
            total_amount=Decimal("150.00"),
            currency="THB",
            cost_count=2,
            status=ApplicationStatus.ACTIVE,
            due_date=date(2025, 2, 1),
            created_at=datetime(2025, 1, 1, 10, 0)
        )
        finance.insert_application(application)

        assert finance.get_application("F250101002") == application
        assert finance.latest_application_number_between(
            datetime(2025, 1, 1), datetime(2025, 1, 2)
        ) == "F250101002"
        assert finance.latest_application_number_between(
            datetime(2025, 1, 2), datetime(2025, 1, 3)
        ) is None

    def test_list_applications_filters(self, stores):
        finance = FinanceRepository(stores.finance)
        rows = [
            ("F241231001", CostType.PAYABLE, ApplicationStatus.ACTIVE, datetime(2024, 12, 31, 23, 59)),
            ("F250101001", CostType.RECEIVABLE, ApplicationStatus.ACTIVE, datetime(2025, 1, 1, 0, 0)),
            ("F250102001", CostType.PAYABLE, ApplicationStatus.CANCELED, datetime(2025, 1, 2, 23, 59, 59)),
            ("F250103001", CostType.PAYABLE, ApplicationStatus.ACTIVE, datetime(2025, 1, 3, 0, 0)),
        ]
        for number, type, status, created_at in rows:
            finance.insert_application(Application(
                application_number=number,
                type=type,
                total_amount=Decimal("10"),
                currency="THB",
                cost_count=1,
                status=status,
                created_at=created_at
            ))

        def numbers(**filters):
            return [a.application_number for a in finance.list_applications(**filters)]

        assert numbers() == [r[0] for r in rows]
        assert numbers(type=CostType.RECEIVABLE) == ["F250101001"]
        assert numbers(status=ApplicationStatus.CANCELED) == ["F250102001"]
        assert numbers(created_from=date(2025, 1, 1), created_to=date(2025, 1, 2)) == [
            "F250101001", "F250102001"
        ]
        assert numbers(created_to=date(2024, 12, 31)) == ["F241231001"]
        assert numbers(type=CostType.PAYABLE, status=ApplicationStatus.ACTIVE, created_from=date(2025, 1, 1)) == [
            "F250103001"
        ]
