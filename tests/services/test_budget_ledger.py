"""
Tests for BudgetLedgerService -- activation and reserve / consume / release.

The lifecycle scenarios walk one tuple through approve 100000, reserve
60000, an over-reservation refused, consumption, and a release that is
refused once everything reserved has been consumed.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from budget_kernel.domain.dtos import AllocationTuple, BudgetStatus
from budget_kernel.domain.notifications import NotificationEvent
from budget_kernel.exceptions import (
    BudgetNotActiveError,
    CostCenterInactiveError,
    DuplicateBudgetError,
    HierarchyMismatchError,
    InsufficientBudgetError,
    InvalidAmountError,
    NegativeReservationError,
    OverConsumptionError,
    PeriodClosedError,
    PeriodNotFoundError,
    UnknownTupleError,
)
from tests.conftest import DEPARTMENT_ID


class TestLifecycleScenario:

    def test_consumed_reservation_cannot_be_released(
        self, budget_ledger, allocation, active_budget, test_actor_id
    ):
        active_budget(Decimal("100000"))

        after = budget_ledger.reserve(allocation, Decimal("60000"), test_actor_id)
        assert after.reserved_amount == Decimal("60000")

        with pytest.raises(InsufficientBudgetError) as exc_info:
            budget_ledger.reserve(allocation, Decimal("50000"), test_actor_id)
        assert exc_info.value.snapshot.reserved_amount == Decimal("60000")

        after = budget_ledger.consume(allocation, Decimal("60000"), test_actor_id)
        assert after.consumed_amount == after.reserved_amount == Decimal("60000")

        with pytest.raises(NegativeReservationError) as exc_info:
            budget_ledger.release(allocation, Decimal("10000"), test_actor_id)
        assert exc_info.value.amount == Decimal("10000")
        assert exc_info.value.snapshot.consumed_amount == Decimal("60000")

        usage = budget_ledger.get_usage(allocation)
        assert (usage.approved_amount, usage.reserved_amount, usage.consumed_amount) == (
            Decimal("100000"),
            Decimal("60000"),
            Decimal("60000"),
        )

    def test_reserve_consume_refuse_release(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget(Decimal("100000"))

        after = budget_ledger.reserve(allocation, Decimal("60000"), test_actor_id)
        assert after.reserved_amount == Decimal("60000")
        assert after.available == Decimal("40000")

        after = budget_ledger.consume(allocation, Decimal("50000"), test_actor_id)
        assert after.consumed_amount == Decimal("50000")
        assert after.outstanding_reservation == Decimal("10000")

        with pytest.raises(InsufficientBudgetError) as exc_info:
            budget_ledger.reserve(allocation, Decimal("60000"), test_actor_id)
        err = exc_info.value
        assert err.allocation_key == allocation.key
        assert err.amount == Decimal("60000")
        assert err.snapshot.reserved_amount == Decimal("60000")
        assert err.snapshot.available == Decimal("40000")

        after = budget_ledger.release(allocation, Decimal("10000"), test_actor_id)
        assert after.approved_amount == Decimal("100000")
        assert after.reserved_amount == Decimal("50000")
        assert after.consumed_amount == Decimal("50000")

    def test_refused_move_leaves_row_untouched(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget(Decimal("1000"))
        budget_ledger.reserve(allocation, Decimal("900"), test_actor_id)
        with pytest.raises(InsufficientBudgetError):
            budget_ledger.reserve(allocation, Decimal("101"), test_actor_id)
        usage = budget_ledger.get_usage(allocation)
        assert usage.reserved_amount == Decimal("900")

    def test_reserve_exactly_available(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget(Decimal("1000.00"))
        after = budget_ledger.reserve(allocation, Decimal("1000.00"), test_actor_id)
        assert after.available == Decimal("0")

    def test_consume_updates_actual_expense(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget(Decimal("500"))
        budget_ledger.reserve(allocation, Decimal("300"), test_actor_id)
        budget_ledger.consume(allocation, Decimal("120.50"), test_actor_id)
        assert budget_ledger.get_budget(allocation).actual_expense == Decimal("120.50")


class TestRefusals:

    def test_over_consumption(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget(Decimal("1000"))
        budget_ledger.reserve(allocation, Decimal("100"), test_actor_id)
        with pytest.raises(OverConsumptionError) as exc_info:
            budget_ledger.consume(allocation, Decimal("100.01"), test_actor_id)
        assert exc_info.value.snapshot.consumed_amount == Decimal("0")

    def test_release_below_consumed(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget(Decimal("1000"))
        budget_ledger.reserve(allocation, Decimal("100"), test_actor_id)
        budget_ledger.consume(allocation, Decimal("80"), test_actor_id)
        with pytest.raises(NegativeReservationError):
            budget_ledger.release(allocation, Decimal("21"), test_actor_id)
        assert budget_ledger.release(allocation, Decimal("20"), test_actor_id).reserved_amount == Decimal("80")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("NaN"), 1.5, "10", True])
    def test_invalid_amounts(self, budget_ledger, allocation, active_budget, test_actor_id, amount):
        active_budget()
        with pytest.raises(InvalidAmountError):
            budget_ledger.reserve(allocation, amount, test_actor_id)

    def test_integer_amount_accepted(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget()
        assert budget_ledger.reserve(allocation, 10, test_actor_id).reserved_amount == Decimal("10")

    def test_unknown_tuple(self, budget_ledger, allocation, open_period, test_actor_id):
        with pytest.raises(UnknownTupleError):
            budget_ledger.reserve(allocation, Decimal("1"), test_actor_id)
        with pytest.raises(UnknownTupleError):
            budget_ledger.get_usage(allocation)
        assert budget_ledger.get_budget(allocation) is None

    def test_closed_period(self, budget_ledger, fiscal_calendar, allocation, open_period, active_budget, test_actor_id):
        active_budget()
        fiscal_calendar.close_period(open_period.id, open_period.end_date, test_actor_id)
        with pytest.raises(PeriodClosedError):
            budget_ledger.reserve(allocation, Decimal("1"), test_actor_id)

    def test_frozen_budget(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget()
        frozen = budget_ledger.freeze_budget(allocation, test_actor_id)
        assert frozen.status == BudgetStatus.FROZEN
        with pytest.raises(BudgetNotActiveError):
            budget_ledger.reserve(allocation, Decimal("1"), test_actor_id)
        budget_ledger.unfreeze_budget(allocation, test_actor_id)
        assert budget_ledger.reserve(allocation, Decimal("1"), test_actor_id).reserved_amount == Decimal("1")

    def test_closed_budget_is_terminal(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget()
        budget_ledger.close_budget(allocation, test_actor_id)
        with pytest.raises(BudgetNotActiveError):
            budget_ledger.unfreeze_budget(allocation, test_actor_id)
        with pytest.raises(BudgetNotActiveError):
            budget_ledger.release(allocation, Decimal("1"), test_actor_id)


class TestActivation:

    def test_creates_budget_and_usage(self, budget_ledger, allocation, active_budget):
        budget = active_budget(Decimal("2500"))
        assert budget.status == BudgetStatus.ACTIVE
        assert budget.allocation == allocation
        assert budget.planned_expense == Decimal("2500")
        usage = budget_ledger.get_usage(allocation)
        assert (usage.approved_amount, usage.reserved_amount, usage.consumed_amount) == (
            Decimal("2500"), Decimal("0"), Decimal("0"),
        )
        assert budget_ledger.get_budget_by_id(budget.id).id == budget.id

    def test_duplicate_tuple(self, allocation, active_budget):
        active_budget()
        with pytest.raises(DuplicateBudgetError):
            active_budget()

    def test_same_cost_center_without_sub_is_separate_tuple(
        self, budget_ledger, allocation, active_budget, test_actor_id
    ):
        active_budget()
        coarse = AllocationTuple(
            fiscal_period_id=allocation.fiscal_period_id,
            department_id=allocation.department_id,
            cost_center_id=allocation.cost_center_id,
        )
        budget_ledger.activate_budget(coarse, Decimal("10"), test_actor_id)
        assert budget_ledger.get_usage(coarse).approved_amount == Decimal("10")

    def test_hierarchy_mismatch(self, budget_ledger, open_period, cost_center_tree, test_actor_id):
        wrong = AllocationTuple(
            fiscal_period_id=open_period.id,
            department_id="D-FIN",
            cost_center_id=cost_center_tree.root.id,
        )
        with pytest.raises(HierarchyMismatchError):
            budget_ledger.activate_budget(wrong, Decimal("10"), test_actor_id)

    def test_inactive_cost_center(
        self, budget_ledger, cost_center_service, open_period, cost_center_tree, test_actor_id
    ):
        cost_center_service.end_date(cost_center_tree.child.id, date(2024, 6, 30), test_actor_id)
        tup = AllocationTuple(
            fiscal_period_id=open_period.id,
            department_id=DEPARTMENT_ID,
            cost_center_id=cost_center_tree.root.id,
            sub_cost_center_id=cost_center_tree.child.id,
        )
        with pytest.raises(CostCenterInactiveError) as exc_info:
            budget_ledger.activate_budget(tup, Decimal("10"), test_actor_id)
        assert exc_info.value.on_date == open_period.start_date

    def test_closed_period_refuses_activation(
        self, budget_ledger, fiscal_calendar, allocation, open_period, test_actor_id
    ):
        fiscal_calendar.close_period(open_period.id, open_period.end_date, test_actor_id)
        with pytest.raises(PeriodClosedError):
            budget_ledger.activate_budget(allocation, Decimal("10"), test_actor_id)

    def test_notifies_owners(self, budget_ledger, allocation, notifications, test_actor_id):
        budget = budget_ledger.activate_budget(
            allocation, Decimal("10"), test_actor_id, notify=("owner-1", "")
        )
        sent = notifications.of_type(NotificationEvent.BUDGET_ACTIVATED)
        assert len(sent) == 1
        assert sent[0].request_id == str(budget.id)
        assert sent[0].actor_ids == ("owner-1",)

    def test_unknown_period(self, budget_ledger, cost_center_tree, test_actor_id):
        tup = AllocationTuple(
            fiscal_period_id=uuid4(),
            department_id=DEPARTMENT_ID,
            cost_center_id=cost_center_tree.root.id,
        )
        with pytest.raises(PeriodNotFoundError):
            budget_ledger.activate_budget(tup, Decimal("10"), test_actor_id)


class TestIncreaseAllocation:

    def test_top_up(self, budget_ledger, allocation, active_budget, test_actor_id):
        active_budget(Decimal("100"))
        budget_ledger.reserve(allocation, Decimal("100"), test_actor_id)
        after = budget_ledger.increase_allocation(allocation, Decimal("50"), test_actor_id)
        assert after.approved_amount == Decimal("150")
        assert after.available == Decimal("50")
        assert budget_ledger.get_budget(allocation).planned_expense == Decimal("150")


class TestLedgerLogging:

    def test_movements_are_logged_with_key(self, budget_ledger, allocation, active_budget, test_actor_id, captured_logs):
        active_budget(Decimal("100"))
        budget_ledger.reserve(allocation, Decimal("40"), test_actor_id)

        records = captured_logs()
        reserved = [r for r in records if r["message"] == "budget_reserved"]
        assert len(reserved) == 1
        assert reserved[0]["allocation_key"] == allocation.key
        assert reserved[0]["actor_id"] == test_actor_id
        assert Decimal(reserved[0]["reserved_amount"]) == Decimal("40")

    def test_refusal_logged_at_warning(self, budget_ledger, allocation, active_budget, test_actor_id, captured_logs):
        active_budget(Decimal("10"))
        with pytest.raises(InsufficientBudgetError):
            budget_ledger.reserve(allocation, Decimal("11"), test_actor_id)

        refused = [r for r in captured_logs() if r["message"] == "budget_reservation_refused"]
        assert refused and refused[0]["level"] == "WARNING"
