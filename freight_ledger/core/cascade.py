"""
Cascade deletion across the shipment and finance stores.

Deleting a shipment removes its costs from the finance store, then the
shipment itself, then rebuilds every application that lost members.
The steps are sequential but not atomic across stores; a crash between
them leaves orphans or stale totals that the next sweep repairs.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Set

from freight_ledger.storage.db import transaction
from freight_ledger.storage.models import CostStatus
from freight_ledger.storage.repository import FinanceRepository, ShipmentRepository
from .errors import FreightLedgerError, NotFoundError, PreconditionViolation
from .reconciliation import Sweeper, SweepReport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeleteResult:
    deleted_shipments: int = 0
    deleted_costs: int = 0
    blocked_ids: List[str] = field(default_factory=list)
    missing_ids: List[str] = field(default_factory=list)
    reconciliation: Optional[SweepReport] = None


class CascadeDeleter:
    """Deletes shipments and costs and repairs the applications they touched.

    Args:
        shipments: Repository of the shipment store
        finance: Repository of the finance store
        sweeper: Used to rebuild affected applications and, when
            `reconcile` is set, for the follow-up pass
        reconcile: Run a best-effort sweep after each deletion
    """

    def __init__(
        self,
        shipments: ShipmentRepository,
        finance: FinanceRepository,
        sweeper: Sweeper,
        reconcile: bool = True
    ):
        self.shipments = shipments
        self.finance = finance
        self.sweeper = sweeper
        self.reconcile = reconcile

    def delete_shipment(self, shipment_id: str) -> DeleteResult:
        """Delete one shipment and its costs.

        Raises:
            NotFoundError: If the shipment does not exist
            PreconditionViolation: has_settled_costs
        """
        if not self.shipments.exists(shipment_id):
            raise NotFoundError(f"Shipment {shipment_id} does not exist")

        result = self.bulk_delete_shipments([shipment_id])
        if result.blocked_ids:
            raise PreconditionViolation(
                f"Shipment {shipment_id} has settled costs and cannot be deleted",
                reason="has_settled_costs"
            )
        return result

    def bulk_delete_shipments(self, shipment_ids: Iterable[str]) -> DeleteResult:
        """Delete every given shipment that has no settled cost.

        Shipments with settled costs are skipped and reported in `blocked_ids`;
        ids that resolve to no shipment are reported in `missing_ids`.
        """
        ids = list(dict.fromkeys(shipment_ids))
        if not ids:
            raise PreconditionViolation("Select at least one shipment", reason="empty_selection")
        present = self.shipments.existing_ids(ids)
        missing_ids = [i for i in ids if i not in present]

        with transaction(self.finance.db_path) as conn:
            costs = self.finance.list_costs(shipment_ids=ids, conn=conn)
            blocked = {c.shipment_id for c in costs if c.status == CostStatus.SETTLED}
            doomed = [c for c in costs if c.shipment_id not in blocked]
            affected = {c.application_number for c in doomed if c.application_number}
            deleted_costs = self.finance.delete_costs([c.id for c in doomed], conn=conn)

        allowed = [i for i in ids if i not in blocked]
        deleted_shipments = self.shipments.delete_shipments(allowed)
        self._rebuild(affected)

        blocked_ids = [i for i in ids if i in blocked]
        if blocked_ids:
            logger.warning(f"[CASCADE] {len(blocked_ids)} shipments blocked by settled costs")
        if missing_ids:
            logger.warning(f"[CASCADE] {len(missing_ids)} shipments not found")
        logger.info(f"[CASCADE] Deleted {deleted_shipments} shipments and {deleted_costs} costs")
        return self._reconciled(
            DeleteResult(deleted_shipments, deleted_costs, blocked_ids, missing_ids)
        )

    def delete_cost(self, cost_id: str) -> DeleteResult:
        """Delete one cost and rebuild its application, if it had one.

        Raises:
            NotFoundError: If the cost does not exist
        """
        with transaction(self.finance.db_path) as conn:
            cost = self.finance.get_cost(cost_id, conn=conn)
            if cost is None:
                raise NotFoundError(f"Cost {cost_id} does not exist")
            deleted = self.finance.delete_costs([cost_id], conn=conn)

        if cost.application_number:
            self._rebuild({cost.application_number})
        logger.info(f"[CASCADE] Deleted cost {cost_id}")
        return self._reconciled(DeleteResult(deleted_costs=deleted))

    def _rebuild(self, application_numbers: Set[str]) -> None:
        for number in sorted(application_numbers):
            try:
                self.sweeper.rebuild_application(number)
            except FreightLedgerError as e:
                logger.warning(f"[CASCADE] Could not rebuild application {number}: {e}")

    def _reconciled(self, result: DeleteResult) -> DeleteResult:
        if not self.reconcile:
            return result
        return replace(result, reconciliation=self.sweeper.run_safely())
