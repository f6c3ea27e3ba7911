"""
Tests for the expense cost lifecycle.

Covers apply, cancel application, settle and cancel settlement, their
rejection reasons, and the reconciliation pass that follows each one.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from freight_ledger.config.loader import LedgerConfig
from freight_ledger.core.errors import NotFoundError, PreconditionViolation, TransientStorageError
from freight_ledger.core.ledger import build_ledger
from freight_ledger.storage.models import (
    Application,
    ApplicationStatus,
    CostStatus,
    CostType,
)

DUE = date(2025, 1, 31)


@pytest.fixture
def pair(shipment, add_cost):
    """Two unapplied THB costs: 100 and 50."""
    return add_cost(shipment.id, "100.00"), add_cost(shipment.id, "50.00")


class TestApply:
    """Test grouping unapplied costs into an application."""

    def test_apply_creates_application(self, ledger, pair, clock):
        a, b = pair
        result = ledger.lifecycle.apply([a.id, b.id], DUE, remarks="January trucking")

        assert result.application_number == "F250101001"
        assert result.total_amount == Decimal("150.00")
        assert result.applied_costs == 2
        assert result.currency == "THB"
        assert result.type == CostType.PAYABLE

        application = ledger.finance.get_application("F250101001")
        assert application.total_amount == Decimal("150")
        assert application.cost_count == 2
        assert application.status == ApplicationStatus.ACTIVE
        assert application.due_date == DUE
        assert application.remarks == "January trucking"

        for cost in ledger.finance.list_costs(ids=[a.id, b.id]):
            assert cost.status == CostStatus.APPLIED
            assert cost.application_number == "F250101001"
            assert cost.application_date == clock()
            assert cost.due_date == DUE
            assert cost.application_remarks == "January trucking"

    def test_reconciliation_runs_after_apply(self, ledger, pair):
        result = ledger.lifecycle.apply([c.id for c in pair], DUE)
        assert result.reconciliation is not None
        assert result.reconciliation.total_changes == 0

    def test_duplicate_ids_count_once(self, ledger, pair):
        a, b = pair
        result = ledger.lifecycle.apply([a.id, b.id, a.id], DUE)
        assert result.applied_costs == 2

    def test_mixed_currency_rejected_without_changes(self, ledger, shipment, add_cost):
        thb = add_cost(shipment.id, "100.00", currency="THB")
        usd = add_cost(shipment.id, "50.00", currency="USD")

        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.apply([thb.id, usd.id], DUE)

        assert exc_info.value.reason == "mixed_currency"
        assert ledger.finance.get_cost(thb.id) == thb
        assert ledger.finance.get_cost(usd.id) == usd
        assert ledger.finance.list_applications() == []

    @pytest.mark.parametrize("overrides", [
        {"currency": None},
        {"amount": None},
        {"amount": "0"},
        {"description": ""},
    ])
    def test_incomplete_costs_rejected_before_numbering(self, ledger, shipment, add_cost, overrides):
        fields = dict(overrides)
        amount = fields.pop("amount", "100.00")
        costs = [add_cost(shipment.id, amount, **fields), add_cost(shipment.id, amount, **fields)]

        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.apply([c.id for c in costs], DUE)

        assert exc_info.value.reason == "invalid_cost"
        assert ledger.finance.list_applications() == []
        assert ledger.codes.application_sequence.current("250101") is None
        assert all(c.status == CostStatus.UNAPPLIED for c in ledger.finance.list_costs())

    def test_mixed_type_rejected(self, ledger, shipment, add_cost):
        payable = add_cost(shipment.id)
        receivable = add_cost(shipment.id, type=CostType.RECEIVABLE)

        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.apply([payable.id, receivable.id], DUE)
        assert exc_info.value.reason == "mixed_type"

    def test_already_applied_rejected(self, ledger, pair, shipment, add_cost):
        ledger.lifecycle.apply([pair[0].id], DUE)
        fresh = add_cost(shipment.id)

        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.apply([pair[0].id, fresh.id], DUE)
        assert exc_info.value.reason == "invalid_status"
        assert ledger.finance.get_cost(fresh.id).status == CostStatus.UNAPPLIED

    def test_over_limit_rejected(self, ledger):
        ids = [f"cost-{i}" for i in range(51)]
        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.apply(ids, DUE)
        assert exc_info.value.reason == "over_limit"

    def test_missing_cost_rejected(self, ledger, pair):
        with pytest.raises(NotFoundError) as exc_info:
            ledger.lifecycle.apply([pair[0].id, "missing"], DUE)
        assert exc_info.value.reason == "not_found"
        assert ledger.finance.get_cost(pair[0].id).status == CostStatus.UNAPPLIED

    def test_empty_selection_and_missing_due_date(self, ledger, pair):
        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.apply([], DUE)
        assert exc_info.value.reason == "empty_selection"

        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.apply([pair[0].id], None)
        assert exc_info.value.reason == "missing_due_date"

    def test_application_number_collision_is_retried(self, ledger, pair, clock):
        # An application written on a previous day under today's number
        # is invisible to the counter backfill.
        ledger.finance.insert_application(Application(
            application_number="F250101001",
            type=CostType.PAYABLE,
            total_amount=Decimal("1"),
            currency="THB",
            cost_count=0,
            status=ApplicationStatus.CANCELED,
            created_at=clock() - timedelta(days=1)
        ))

        result = ledger.lifecycle.apply([c.id for c in pair], DUE)
        assert result.application_number == "F250101002"

    def test_concurrent_status_change_detected_inside_transaction(self, ledger, pair):
        """A cost applied by someone else after validation aborts the insert."""
        a, b = pair
        original = ledger.codes.next_application_number

        def racing_number():
            number = original()
            ledger.finance.mark_applied([a.id], "F249999999", datetime(2025, 1, 1), DUE, None)
            return number

        with patch.object(ledger.codes, "next_application_number", side_effect=racing_number):
            with pytest.raises(PreconditionViolation) as exc_info:
                ledger.lifecycle.apply([a.id, b.id], DUE)

        assert exc_info.value.reason == "invalid_status"
        assert ledger.finance.get_cost(b.id).status == CostStatus.UNAPPLIED
        assert ledger.finance.get_application("F250101001") is None

        # The number spent on the rejected attempt stays a gap.
        assert ledger.lifecycle.apply([b.id], DUE).application_number == "F250101002"


class TestCancelApplication:
    """Test canceling an application."""

    def test_cancel_reverts_members(self, ledger, pair, clock):
        ledger.lifecycle.apply([c.id for c in pair], DUE, remarks="x")
        clock.advance(hours=2)

        result = ledger.lifecycle.cancel_application("F250101001")

        assert result.affected_costs == 2
        for cost in ledger.finance.list_costs(ids=[c.id for c in pair]):
            assert cost.status == CostStatus.UNAPPLIED
            assert cost.application_number is None
            assert cost.application_date is None
            assert cost.due_date is None
            assert cost.application_remarks is None

        application = ledger.finance.get_application("F250101001")
        assert application.status == ApplicationStatus.CANCELED
        assert application.canceled_at == clock()

    def test_canceled_application_is_kept_with_zero_totals(self, ledger, pair):
        ledger.lifecycle.apply([c.id for c in pair], DUE)
        result = ledger.lifecycle.cancel_application("F250101001")

        assert result.reconciliation.zeroed_applications == 1
        application = ledger.finance.get_application("F250101001")
        assert application.total_amount == 0
        assert application.cost_count == 0

        assert ledger.sweeper.run().total_changes == 0

    def test_cancel_rejected_when_a_member_is_settled(self, ledger, pair):
        a, b = pair
        ledger.lifecycle.apply([a.id, b.id], DUE)
        ledger.lifecycle.settle([a.id])

        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.cancel_application("F250101001")

        assert exc_info.value.reason == "contains_settled_cost"
        assert ledger.finance.get_application("F250101001").status == ApplicationStatus.ACTIVE
        assert ledger.finance.get_cost(b.id).status == CostStatus.APPLIED

    def test_cancel_twice_rejected(self, ledger, pair):
        ledger.lifecycle.apply([c.id for c in pair], DUE)
        ledger.lifecycle.cancel_application("F250101001")

        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.cancel_application("F250101001")
        assert exc_info.value.reason == "already_canceled"

    def test_cancel_unknown_application(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.lifecycle.cancel_application("F250101999")

    def test_costs_can_be_reapplied_after_cancel(self, ledger, pair):
        ids = [c.id for c in pair]
        ledger.lifecycle.apply(ids, DUE)
        ledger.lifecycle.cancel_application("F250101001")

        assert ledger.lifecycle.apply(ids, DUE).application_number == "F250101002"


class TestSettlement:
    """Test settling and reverting settlement."""

    def test_settle_applied_costs(self, ledger, pair):
        ids = [c.id for c in pair]
        ledger.lifecycle.apply(ids, DUE)

        when = datetime(2025, 1, 20, 15, 0)
        result = ledger.lifecycle.settle(ids, settlement_date=when, remarks="wire 889")

        assert result.settled_costs == 2
        for cost in ledger.finance.list_costs(ids=ids):
            assert cost.status == CostStatus.SETTLED
            assert cost.settlement_date == when
            assert cost.settlement_remarks == "wire 889"
            assert cost.application_number == "F250101001"
        assert ledger.finance.get_application("F250101001").total_amount == Decimal("150")

    def test_settlement_date_defaults_to_now(self, ledger, pair, clock):
        ledger.lifecycle.apply([pair[0].id], DUE)
        result = ledger.lifecycle.settle([pair[0].id])
        assert result.settlement_date == clock()
        assert ledger.finance.get_cost(pair[0].id).settlement_date == clock()

    def test_settle_requires_applied(self, ledger, pair):
        a, b = pair
        ledger.lifecycle.apply([a.id], DUE)

        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.settle([a.id, b.id])
        assert exc_info.value.reason == "invalid_status"
        assert ledger.finance.get_cost(a.id).status == CostStatus.APPLIED

    def test_settle_unknown_cost(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.lifecycle.settle(["missing"])

    def test_cancel_settlement_ignores_non_settled(self, ledger, pair):
        a, b = pair
        ledger.lifecycle.apply([a.id, b.id], DUE)
        ledger.lifecycle.settle([a.id], remarks="paid")

        result = ledger.lifecycle.cancel_settlement([a.id, b.id, "missing"])

        assert result.affected_costs == 1
        reverted = ledger.finance.get_cost(a.id)
        assert reverted.status == CostStatus.APPLIED
        assert reverted.settlement_date is None
        assert reverted.settlement_remarks is None
        assert reverted.application_number == "F250101001"
        assert ledger.finance.get_cost(b.id).status == CostStatus.APPLIED

    def test_cancel_settlement_with_nothing_settled(self, ledger, pair):
        ledger.lifecycle.apply([pair[0].id], DUE)
        with pytest.raises(PreconditionViolation) as exc_info:
            ledger.lifecycle.cancel_settlement([c.id for c in pair])
        assert exc_info.value.reason == "nothing_to_revert"


class TestReconciliationIsBestEffort:
    """Test that a failed follow-up sweep never undoes the operation."""

    def test_sweep_failure_keeps_operation(self, ledger, pair):
        with patch.object(ledger.sweeper, "run", side_effect=TransientStorageError("down")):
            result = ledger.lifecycle.apply([c.id for c in pair], DUE)

        assert result.reconciliation is None
        assert ledger.finance.get_application(result.application_number) is not None

    def test_without_sweeper(self, stores, clock, shipment, add_cost):
        ledger = build_ledger(LedgerConfig(stores=stores), clock=clock, reconcile=False)
        cost = add_cost(shipment.id)
        with patch.object(ledger.sweeper, "run") as run:
            result = ledger.lifecycle.apply([cost.id], DUE)
        assert result.reconciliation is None
        run.assert_not_called()
