"""
Expense cost lifecycle.

State machine for a single cost and the expense application it joins:

    unapplied --apply--> applied --settle--> settled
    unapplied <--cancel application-- applied <--cancel settlement-- settled

Every operation validates its preconditions and mutates inside one
finance-store transaction, so a rejected request leaves no partial
writes. Once the transaction has committed, a best-effort reconciliation
pass runs as a separate step; its failure never undoes the operation.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, TypeVar

from freight_ledger.config.loader import ExpenseConfig
from freight_ledger.storage.db import transaction
from freight_ledger.storage.models import (
    Application,
    ApplicationStatus,
    Cost,
    CostStatus,
    CostType,
)
from freight_ledger.storage.repository import FinanceRepository
from .codes import CodeGenerator
from .errors import NotFoundError, PreconditionViolation
from .reconciliation import Sweeper, SweepReport, is_valid_cost

logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(frozen=True)
class ApplyResult:
    application_number: str
    type: CostType
    applied_costs: int
    total_amount: Decimal
    currency: str
    reconciliation: Optional[SweepReport] = None


@dataclass(frozen=True)
class CancelApplicationResult:
    application_number: str
    affected_costs: int
    reconciliation: Optional[SweepReport] = None


@dataclass(frozen=True)
class SettleResult:
    settled_costs: int
    settlement_date: datetime
    reconciliation: Optional[SweepReport] = None


@dataclass(frozen=True)
class CancelSettlementResult:
    affected_costs: int
    reconciliation: Optional[SweepReport] = None


def _distinct(cost_ids: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(cost_ids))


def _require_selection(ids: List[str]) -> None:
    if not ids:
        raise PreconditionViolation("Select at least one cost", reason="empty_selection")


def _require_all_found(ids: List[str], costs: List[Cost]) -> None:
    found = {c.id for c in costs}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFoundError(f"Costs not found: {', '.join(missing)}")


def validate_applicable(costs: List[Cost]) -> None:
    """Check that a group of costs can be submitted as one application.

    Raises:
        PreconditionViolation: On a cost missing required fields or with a
            non-positive amount, mixed type, a cost that is not unapplied,
            or mixed currency
    """
    incomplete = [c.id for c in costs if not is_valid_cost(c)]
    if incomplete:
        raise PreconditionViolation(
            f"Costs missing required fields or with a non-positive amount: {', '.join(incomplete)}",
            reason="invalid_cost"
        )
    if len({c.type for c in costs}) != 1:
        raise PreconditionViolation(
            "Costs in one application must share one type (receivable or payable)",
            reason="mixed_type"
        )
    not_unapplied = [c.id for c in costs if c.status != CostStatus.UNAPPLIED]
    if not_unapplied:
        raise PreconditionViolation(
            f"Costs already applied or settled: {', '.join(not_unapplied)}",
            reason="invalid_status"
        )
    if len({c.currency for c in costs}) != 1:
        raise PreconditionViolation(
            "Costs in one application must share one currency",
            reason="mixed_currency"
        )


class CostLifecycle:
    """Applies, cancels and settles costs.

    Args:
        finance: Repository of the finance store
        codes: Generator used to mint application numbers
        expenses: Batch limits
        sweeper: Reconciliation run after each successful operation, if any
        clock: Source of the current time
    """

    def __init__(
        self,
        finance: FinanceRepository,
        codes: CodeGenerator,
        expenses: Optional[ExpenseConfig] = None,
        sweeper: Optional[Sweeper] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.finance = finance
        self.codes = codes
        self.expenses = expenses or ExpenseConfig()
        self.sweeper = sweeper
        self.clock = clock

    def apply(
        self,
        cost_ids: Iterable[str],
        due_date: date,
        remarks: Optional[str] = None
    ) -> ApplyResult:
        """Group unapplied costs into a new expense application.

        Raises:
            PreconditionViolation: empty_selection, over_limit,
                missing_due_date, invalid_cost, mixed_type, invalid_status,
                mixed_currency
            NotFoundError: If any cost id does not resolve
            ContentionError: If application numbers kept colliding
            ResourceExhaustedError: If today's application numbers are used up
        """
        ids = _distinct(cost_ids)
        _require_selection(ids)
        if len(ids) > self.expenses.max_batch:
            raise PreconditionViolation(
                f"At most {self.expenses.max_batch} costs can be applied at once",
                reason="over_limit"
            )
        if due_date is None:
            raise PreconditionViolation("A due date is required", reason="missing_due_date")

        # Fail fast before an application number is spent.
        costs = self.finance.list_costs(ids=ids)
        _require_all_found(ids, costs)
        validate_applicable(costs)

        def insert(application_number: str) -> ApplyResult:
            now = self.clock()
            with transaction(self.finance.db_path) as conn:
                current = self.finance.list_costs(ids=ids, conn=conn)
                _require_all_found(ids, current)
                validate_applicable(current)

                total = sum((c.amount or Decimal("0") for c in current), Decimal("0"))
                application = Application(
                    application_number=application_number,
                    type=current[0].type,
                    total_amount=total,
                    currency=current[0].currency,
                    cost_count=len(current),
                    status=ApplicationStatus.ACTIVE,
                    due_date=due_date,
                    remarks=remarks or None,
                    created_at=now
                )
                self.finance.insert_application(application, conn=conn)
                self.finance.mark_applied(
                    ids, application_number, now, due_date, remarks or None, conn=conn
                )
            return ApplyResult(
                application_number=application_number,
                type=application.type,
                applied_costs=application.cost_count,
                total_amount=total,
                currency=application.currency
            )

        result = self.codes.with_application_number(insert)
        logger.info(
            f"[EXPENSE] Applied {result.applied_costs} costs as {result.application_number} "
            f"({result.total_amount} {result.currency})"
        )
        return self._reconcile(result)

    def cancel_application(self, application_number: str) -> CancelApplicationResult:
        """Cancel an application and return its costs to `unapplied`.

        Raises:
            NotFoundError: If the application does not exist
            PreconditionViolation: already_canceled, contains_settled_cost
        """
        if not application_number:
            raise PreconditionViolation("An application number is required", reason="empty_selection")

        with transaction(self.finance.db_path) as conn:
            application = self.finance.get_application(application_number, conn=conn)
            if application is None:
                raise NotFoundError(f"Application {application_number} does not exist")
            if application.status == ApplicationStatus.CANCELED:
                raise PreconditionViolation(
                    f"Application {application_number} is already canceled",
                    reason="already_canceled"
                )
            members = self.finance.list_costs(application_number=application_number, conn=conn)
            if any(c.status == CostStatus.SETTLED for c in members):
                raise PreconditionViolation(
                    f"Application {application_number} contains settled costs",
                    reason="contains_settled_cost"
                )

            self.finance.cancel_application(application_number, self.clock(), conn=conn)
            affected = self.finance.unlink_application([c.id for c in members], conn=conn)

        logger.info(f"[EXPENSE] Canceled {application_number}, {affected} costs unapplied")
        return self._reconcile(CancelApplicationResult(application_number, affected))

    def settle(
        self,
        cost_ids: Iterable[str],
        settlement_date: Optional[datetime] = None,
        remarks: Optional[str] = None
    ) -> SettleResult:
        """Mark applied costs as settled. Application totals stay as they are.

        Raises:
            NotFoundError: If any cost id does not resolve
            PreconditionViolation: empty_selection, invalid_status
        """
        ids = _distinct(cost_ids)
        _require_selection(ids)
        when = settlement_date or self.clock()

        with transaction(self.finance.db_path) as conn:
            costs = self.finance.list_costs(ids=ids, conn=conn)
            _require_all_found(ids, costs)
            not_applied = [c.id for c in costs if c.status != CostStatus.APPLIED]
            if not_applied:
                raise PreconditionViolation(
                    f"Only applied costs can be settled: {', '.join(not_applied)}",
                    reason="invalid_status"
                )
            settled = self.finance.mark_settled(ids, when, remarks or None, conn=conn)

        logger.info(f"[EXPENSE] Settled {settled} costs")
        return self._reconcile(SettleResult(settled, when))

    def cancel_settlement(self, cost_ids: Iterable[str]) -> CancelSettlementResult:
        """Return the settled costs among `cost_ids` to `applied`.

        Ids that are not currently settled are ignored.

        Raises:
            PreconditionViolation: empty_selection, or nothing_to_revert
                when none of the ids was settled
        """
        ids = _distinct(cost_ids)
        _require_selection(ids)

        with transaction(self.finance.db_path) as conn:
            affected = self.finance.revert_settlement(ids, conn=conn)
            if affected == 0:
                raise PreconditionViolation(
                    "None of the selected costs is settled",
                    reason="nothing_to_revert"
                )

        logger.info(f"[EXPENSE] Reverted settlement of {affected} costs")
        return self._reconcile(CancelSettlementResult(affected))

    def _reconcile(self, result: R) -> R:
        if self.sweeper is None:
            return result
        return replace(result, reconciliation=self.sweeper.run_safely())
