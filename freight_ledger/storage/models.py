"""
Data models for storage layer.

Defines the records kept in the main, shipment and finance stores.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class CostStatus(Enum):
    """Lifecycle states of a single expense cost."""
    UNAPPLIED = "unapplied"
    APPLIED = "applied"
    SETTLED = "settled"


class CostType(Enum):
    """Direction of a cost: collected from or paid to a party."""
    RECEIVABLE = "receivable"
    PAYABLE = "payable"


class ApplicationStatus(Enum):
    ACTIVE = "active"
    CANCELED = "canceled"


class PartyKind(Enum):
    """Master-data party collections; the value is the table name."""
    CUSTOMER = "customer"
    SUPPLIER = "supplier"


@dataclass(frozen=True)
class Party:
    """A customer or supplier kept in the main store."""
    id: str
    code: str
    name: str
    kind: PartyKind
    created_at: datetime


@dataclass(frozen=True)
class Shipment:
    """A shipment kept in the shipment store.

    Costs reference it by `id` only; the finance store holds no foreign key.
    """
    id: str
    code: str
    created_at: datetime
    bl_number: Optional[str] = None


@dataclass(frozen=True)
class SequenceCounter:
    """Current value of one partitioned sequence."""
    scope: str
    partition_key: str
    seq: int


@dataclass(frozen=True)
class Cost:
    """An expense line belonging to one shipment and at most one application.

    Fields validated by the reconciliation sweep are optional here because
    the finance store may hold rows written before those rules existed.
    """
    id: str
    shipment_id: str
    type: CostType
    status: CostStatus
    amount: Optional[Decimal]
    currency: Optional[str]
    description: Optional[str]
    financial_subject_id: Optional[int]
    settlement_unit_type: Optional[PartyKind]
    settlement_unit_id: Optional[str]
    created_at: datetime
    remarks: Optional[str] = None
    application_number: Optional[str] = None
    application_date: Optional[datetime] = None
    due_date: Optional[date] = None
    application_remarks: Optional[str] = None
    settlement_date: Optional[datetime] = None
    settlement_remarks: Optional[str] = None


@dataclass(frozen=True)
class Application:
    """Expense application aggregating the costs submitted together."""
    application_number: str
    type: CostType
    total_amount: Decimal
    currency: str
    cost_count: int
    status: ApplicationStatus
    created_at: datetime
    due_date: Optional[date] = None
    remarks: Optional[str] = None
    canceled_at: Optional[datetime] = None
