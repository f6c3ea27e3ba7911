"""
Shared fixtures: temporary stores, a controllable clock and cost factories.
"""

import random
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from freight_ledger.config.loader import LedgerConfig, StoreConfig
from freight_ledger.core.ledger import build_ledger
from freight_ledger.storage.models import Cost, CostStatus, CostType, PartyKind
from freight_ledger.storage.repository import initialize_schema


class FixedClock:
    """Clock returning a settable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def stores(tmp_path) -> StoreConfig:
    """Three empty, initialized stores in a temporary directory."""
    config = StoreConfig(
        main=str(tmp_path / "main.db"),
        shipment=str(tmp_path / "shipment.db"),
        finance=str(tmp_path / "finance.db"),
    )
    initialize_schema(config)
    return config


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 1, 1, 9, 30, 0))


@pytest.fixture
def ledger(stores, clock):
    return build_ledger(LedgerConfig(stores=stores), clock=clock, rng=random.Random(7))


@pytest.fixture
def shipment(ledger):
    return ledger.codes.create_shipment(bl_number="BL-TEST-1")


@pytest.fixture
def add_cost(ledger, clock):
    """Insert a valid cost; keyword arguments override any field."""
    def _add(shipment_id: str, amount: str = "100.00", **overrides) -> Cost:
        fields = dict(
            id=str(uuid.uuid4()),
            shipment_id=shipment_id,
            type=CostType.PAYABLE,
            status=CostStatus.UNAPPLIED,
            amount=Decimal(amount) if amount is not None else None,
            currency="THB",
            description="Trucking",
            financial_subject_id=1,
            settlement_unit_type=PartyKind.SUPPLIER,
            settlement_unit_id="supplier-1",
            created_at=clock(),
        )
        fields.update(overrides)
        cost = Cost(**fields)
        ledger.finance.insert_cost(cost)
        return cost
    return _add
