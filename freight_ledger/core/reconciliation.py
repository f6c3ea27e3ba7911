"""
Cross-store reconciliation.

Costs live in the finance store while the shipments they belong to live
in the shipment store, with no foreign key or shared transaction between
them. This module restores the application-level invariants after the
fact, in five ordered steps:

1. Orphan removal - delete costs whose shipment no longer exists
2. Invalid-cost removal - delete costs missing required fields or with a
   non-positive amount
3. Dangling-application unlink - reset costs pointing at an application
   that does not exist
4. Application aggregate rebuild - recompute totals from current members;
   delete empty active applications, zero empty canceled ones
5. Status normalization - settled or applied costs without an application

The planning functions are pure and work on snapshots, so a whole pass
can be evaluated in memory with `reconcile_snapshot`. `Sweeper` runs the
same steps against the stores, re-reading before each step, and writes
only to the finance store.

Usage:
    sweeper = Sweeper(stores)
    report = sweeper.run()
"""

import logging
import sqlite3
from dataclasses import asdict, dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from freight_ledger.config.loader import StoreConfig
from freight_ledger.storage.db import transaction
from freight_ledger.storage.models import Application, ApplicationStatus, Cost, CostStatus
from freight_ledger.storage.repository import FinanceRepository, ShipmentRepository
from .errors import FreightLedgerError

logger = logging.getLogger(__name__)


# =============================================================================
# PLANNING (pure)
# =============================================================================

class AggregateAction(Enum):
    UPDATE = "update"
    DELETE = "delete"
    ZERO = "zero"


@dataclass(frozen=True)
class AggregateFix:
    """Correction to one application's stored aggregate."""
    application_number: str
    action: AggregateAction
    total_amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    cost_count: int = 0


def is_valid_cost(cost: Cost) -> bool:
    """Check the fields every cost must carry."""
    return bool(
        cost.financial_subject_id
        and cost.settlement_unit_id
        and cost.description
        and cost.currency
        and cost.amount is not None
        and cost.amount > 0
    )


def find_orphan_costs(costs: Iterable[Cost], shipment_ids: Set[str]) -> List[str]:
    return [c.id for c in costs if c.shipment_id not in shipment_ids]


def find_invalid_costs(costs: Iterable[Cost]) -> List[str]:
    return [c.id for c in costs if not is_valid_cost(c)]


def find_dangling_links(costs: Iterable[Cost], application_numbers: Set[str]) -> List[str]:
    """Costs carrying an application number that resolves to nothing."""
    return [
        c.id for c in costs
        if c.application_number and c.application_number not in application_numbers
    ]


def rebuild_aggregate(application: Application, members: Sequence[Cost]) -> Optional[AggregateFix]:
    """Compare an application against its current members.

    Returns:
        The fix to apply, or None when the stored aggregate is already right
    """
    number = application.application_number
    if not members:
        if application.status != ApplicationStatus.CANCELED:
            return AggregateFix(number, AggregateAction.DELETE)
        if application.total_amount != 0 or application.cost_count != 0:
            return AggregateFix(number, AggregateAction.ZERO, currency=application.currency)
        return None

    total = sum((c.amount or Decimal("0") for c in members), Decimal("0"))
    currency = members[0].currency or application.currency
    if (
        application.total_amount == total
        and application.currency == currency
        and application.cost_count == len(members)
    ):
        return None
    return AggregateFix(number, AggregateAction.UPDATE, total, currency, len(members))


def plan_aggregate_rebuild(
    applications: Iterable[Application],
    costs: Iterable[Cost]
) -> List[AggregateFix]:
    members: Dict[str, List[Cost]] = {}
    for cost in costs:
        if cost.application_number:
            members.setdefault(cost.application_number, []).append(cost)

    fixes = []
    for application in applications:
        fix = rebuild_aggregate(application, members.get(application.application_number, []))
        if fix is not None:
            fixes.append(fix)
    return fixes


def find_settled_without_application(costs: Iterable[Cost]) -> List[str]:
    return [c.id for c in costs if c.status == CostStatus.SETTLED and not c.application_number]


def find_applied_without_application(costs: Iterable[Cost]) -> List[str]:
    return [c.id for c in costs if c.status == CostStatus.APPLIED and not c.application_number]


@dataclass
class SweepReport:
    """Rows affected by each step of one reconciliation pass."""
    deleted_orphan_costs: int = 0
    deleted_invalid_costs: int = 0
    unlinked_costs: int = 0
    updated_applications: int = 0
    deleted_applications: int = 0
    zeroed_applications: int = 0
    normalized_settled_without_application: int = 0
    normalized_applied_without_application: int = 0
    failed_applications: int = 0

    @property
    def total_changes(self) -> int:
        return sum(v for k, v in asdict(self).items() if k != "failed_applications")

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time view of the collections a pass reads."""
    shipment_ids: FrozenSet[str]
    costs: Tuple[Cost, ...]
    applications: Tuple[Application, ...]


def _unlinked(cost: Cost) -> Cost:
    return replace(
        cost,
        status=CostStatus.UNAPPLIED,
        application_number=None,
        application_date=None,
        due_date=None,
        application_remarks=None,
        settlement_date=None,
        settlement_remarks=None
    )


def reconcile_snapshot(snapshot: Snapshot) -> Tuple[Snapshot, SweepReport]:
    """Run a full pass in memory.

    Returns:
        The repaired snapshot and the counts a live pass would report
    """
    report = SweepReport()
    costs = list(snapshot.costs)

    orphans = set(find_orphan_costs(costs, set(snapshot.shipment_ids)))
    report.deleted_orphan_costs = len(orphans)
    costs = [c for c in costs if c.id not in orphans]

    invalid = set(find_invalid_costs(costs))
    report.deleted_invalid_costs = len(invalid)
    costs = [c for c in costs if c.id not in invalid]

    numbers = {a.application_number for a in snapshot.applications}
    dangling = set(find_dangling_links(costs, numbers))
    report.unlinked_costs = len(dangling)
    costs = [_unlinked(c) if c.id in dangling else c for c in costs]

    applications = {a.application_number: a for a in snapshot.applications}
    for fix in plan_aggregate_rebuild(snapshot.applications, costs):
        if fix.action == AggregateAction.DELETE:
            del applications[fix.application_number]
            report.deleted_applications += 1
        else:
            applications[fix.application_number] = replace(
                applications[fix.application_number],
                total_amount=fix.total_amount,
                currency=fix.currency or applications[fix.application_number].currency,
                cost_count=fix.cost_count
            )
            if fix.action == AggregateAction.ZERO:
                report.zeroed_applications += 1
            else:
                report.updated_applications += 1

    settled = set(find_settled_without_application(costs))
    report.normalized_settled_without_application = len(settled)
    costs = [
        replace(c, status=CostStatus.APPLIED, settlement_date=None, settlement_remarks=None)
        if c.id in settled else c
        for c in costs
    ]
    applied = set(find_applied_without_application(costs))
    report.normalized_applied_without_application = len(applied)
    costs = [_unlinked(c) if c.id in applied else c for c in costs]

    repaired = Snapshot(
        shipment_ids=snapshot.shipment_ids,
        costs=tuple(costs),
        applications=tuple(applications.values())
    )
    return repaired, report


# =============================================================================
# SWEEPER (live stores)
# =============================================================================

class Sweeper:
    """Runs reconciliation passes against the shipment and finance stores.

    A pass is idempotent and safe to run concurrently with itself and with
    lifecycle operations: every step starts from a fresh read, and every
    write is guarded by the condition that selected it.
    """

    def __init__(self, stores: StoreConfig):
        self.shipments = ShipmentRepository(stores.shipment)
        self.finance = FinanceRepository(stores.finance)

    def run(self) -> SweepReport:
        """Run one full pass.

        Failures repairing an individual application are logged and
        counted; failures reading the base collections abort the pass.

        Returns:
            Counts of affected rows per step

        Raises:
            TransientStorageError: If a store could not be read or written
        """
        report = SweepReport()
        try:
            report.deleted_orphan_costs = self._remove_orphans()
            report.deleted_invalid_costs = self._remove_invalid()
            report.unlinked_costs = self._unlink_dangling()
            self._rebuild_applications(report)
            self._normalize_statuses(report)
        except (FreightLedgerError, sqlite3.Error) as e:
            logger.error(f"[SWEEP] Pass aborted: {e}")
            raise

        if report.total_changes or report.failed_applications:
            logger.warning(f"[SWEEP] Repaired {report.total_changes} rows: {report.as_dict()}")
        else:
            logger.info("[SWEEP] Completed, nothing to repair")
        return report

    def run_safely(self) -> Optional[SweepReport]:
        """Run one pass for its side effects only; failures are logged, not raised."""
        try:
            return self.run()
        except (FreightLedgerError, sqlite3.Error) as e:
            logger.error(f"[SWEEP] Best-effort pass failed: {e}")
            return None

    def _remove_orphans(self) -> int:
        # Costs are read before shipments: a cost seen here was written
        # after its shipment, so that shipment is in the id set if it exists.
        costs = self.finance.list_costs()
        shipment_ids = self.shipments.list_ids()
        orphans = find_orphan_costs(costs, shipment_ids)
        if orphans:
            logger.info(f"[SWEEP] Removing {len(orphans)} orphaned costs")
        return self.finance.delete_costs(orphans)

    def _remove_invalid(self) -> int:
        invalid = find_invalid_costs(self.finance.list_costs())
        if invalid:
            logger.info(f"[SWEEP] Removing {len(invalid)} invalid costs")
        return self.finance.delete_costs(invalid)

    def _unlink_dangling(self) -> int:
        with transaction(self.finance.db_path) as conn:
            costs = self.finance.list_costs(conn=conn)
            numbers = {a.application_number for a in self.finance.list_applications(conn=conn)}
            dangling = find_dangling_links(costs, numbers)
            if dangling:
                logger.info(f"[SWEEP] Unlinking {len(dangling)} costs from missing applications")
            return self.finance.unlink_application(dangling, conn=conn)

    def _rebuild_applications(self, report: SweepReport) -> None:
        for application in self.finance.list_applications():
            try:
                fix = self.rebuild_application(application.application_number)
            except (FreightLedgerError, sqlite3.Error) as e:
                report.failed_applications += 1
                logger.warning(
                    f"[SWEEP] Could not rebuild application {application.application_number}: {e}"
                )
                continue
            if fix is None:
                continue
            if fix.action == AggregateAction.DELETE:
                report.deleted_applications += 1
            elif fix.action == AggregateAction.ZERO:
                report.zeroed_applications += 1
            else:
                report.updated_applications += 1

    def rebuild_application(self, application_number: str) -> Optional[AggregateFix]:
        """Recompute one application from its current members and store the result.

        Returns:
            The fix that was applied, or None if nothing changed or the
            application no longer exists
        """
        with transaction(self.finance.db_path) as conn:
            application = self.finance.get_application(application_number, conn=conn)
            if application is None:
                return None
            members = self.finance.list_costs(application_number=application_number, conn=conn)
            fix = rebuild_aggregate(application, members)
            if fix is None:
                return None

            if fix.action == AggregateAction.DELETE:
                self.finance.delete_application(application_number, conn=conn)
                logger.info(f"[SWEEP] Deleted empty application {application_number}")
            else:
                self.finance.update_application_totals(
                    application_number,
                    fix.total_amount,
                    fix.currency or application.currency,
                    fix.cost_count,
                    conn=conn
                )
                logger.info(
                    f"[SWEEP] Application {application_number} -> "
                    f"{fix.cost_count} costs, {fix.total_amount} {fix.currency}"
                )
            return fix

    def _normalize_statuses(self, report: SweepReport) -> None:
        # Settled first: a settled cost without an application becomes
        # applied, and is then caught by the applied rule in the same pass.
        with transaction(self.finance.db_path) as conn:
            settled = find_settled_without_application(self.finance.list_costs(conn=conn))
            report.normalized_settled_without_application = self.finance.revert_settlement(
                settled, conn=conn
            )
            applied = find_applied_without_application(self.finance.list_costs(conn=conn))
            report.normalized_applied_without_application = self.finance.unlink_application(
                applied, conn=conn
            )
