"""
Cost entry.

Adds costs to a shipment and edits their details. Lifecycle fields
(status, application and settlement) are only changed by CostLifecycle.
Every successful write is followed by a best-effort reconciliation pass,
which also brings the totals of the cost's application up to date.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from freight_ledger.storage.db import transaction
from freight_ledger.storage.models import Cost, CostStatus, CostType, PartyKind
from freight_ledger.storage.repository import FinanceRepository, ShipmentRepository
from .errors import NotFoundError, PreconditionViolation
from .reconciliation import Sweeper, SweepReport, is_valid_cost

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({
    "description",
    "amount",
    "currency",
    "financial_subject_id",
    "settlement_unit_type",
    "settlement_unit_id",
    "remarks",
})


@dataclass(frozen=True)
class CostEntryResult:
    cost: Cost
    reconciliation: Optional[SweepReport] = None


def _require_valid(cost: Cost) -> None:
    if not is_valid_cost(cost):
        raise PreconditionViolation(
            "A cost needs a financial subject, a settlement unit, a description, "
            "a currency and a positive amount",
            reason="invalid_cost"
        )


class CostEntry:
    """Creates and edits shipment costs.

    Args:
        shipments: Repository of the shipment store, to check the owner exists
        finance: Repository of the finance store
        sweeper: Reconciliation run after each write, if any
        clock: Source of the current time
    """

    def __init__(
        self,
        shipments: ShipmentRepository,
        finance: FinanceRepository,
        sweeper: Optional[Sweeper] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.shipments = shipments
        self.finance = finance
        self.sweeper = sweeper
        self.clock = clock

    def add_cost(
        self,
        shipment_id: str,
        type: CostType,
        amount: Decimal,
        description: str,
        financial_subject_id: int,
        settlement_unit_type: PartyKind,
        settlement_unit_id: str,
        currency: str = "THB",
        remarks: Optional[str] = None
    ) -> CostEntryResult:
        """Add an unapplied cost to a shipment.

        Raises:
            NotFoundError: If the shipment does not exist
            PreconditionViolation: invalid_cost
        """
        if not self.shipments.exists(shipment_id):
            raise NotFoundError(f"Shipment {shipment_id} does not exist")

        cost = Cost(
            id=str(uuid.uuid4()),
            shipment_id=shipment_id,
            type=type,
            status=CostStatus.UNAPPLIED,
            amount=amount,
            currency=currency,
            description=description,
            financial_subject_id=financial_subject_id,
            settlement_unit_type=settlement_unit_type,
            settlement_unit_id=settlement_unit_id,
            remarks=remarks or None,
            created_at=self.clock()
        )
        _require_valid(cost)
        self.finance.insert_cost(cost)

        logger.info(f"[COSTS] Added {cost.amount} {cost.currency} to shipment {shipment_id}")
        return self._reconciled(CostEntryResult(cost))

    def update_cost(self, cost_id: str, **changes) -> CostEntryResult:
        """Change the details of a cost.

        Settled costs are locked. A cost that belongs to an application
        keeps the application's currency.

        Raises:
            ValueError: If `changes` names a field that is not editable
            NotFoundError: If the cost does not exist
            PreconditionViolation: invalid_cost, invalid_status, mixed_currency
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        with transaction(self.finance.db_path) as conn:
            current = self.finance.get_cost(cost_id, conn=conn)
            if current is None:
                raise NotFoundError(f"Cost {cost_id} does not exist")
            if current.status == CostStatus.SETTLED:
                raise PreconditionViolation(
                    f"Cost {cost_id} is settled and cannot be edited",
                    reason="invalid_status"
                )

            updated = replace(current, **changes)
            _require_valid(updated)
            if current.application_number and updated.currency != current.currency:
                raise PreconditionViolation(
                    f"Cost {cost_id} belongs to {current.application_number}; "
                    "its currency cannot change",
                    reason="mixed_currency"
                )
            self.finance.update_cost_details(updated, conn=conn)

        logger.info(f"[COSTS] Updated cost {cost_id}")
        return self._reconciled(CostEntryResult(updated))

    def _reconciled(self, result: CostEntryResult) -> CostEntryResult:
        if self.sweeper is None:
            return result
        return replace(result, reconciliation=self.sweeper.run_safely())
