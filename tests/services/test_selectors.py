"""
Tests for the read-only selectors: ledger views, approver inboxes and
overdue approval steps.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

from budget_kernel.domain.dtos import AllocationTuple, EscalationPolicy
from budget_kernel.domain.workflow import (
    RequestKind,
    RequestRef,
    RequestStatus,
    StepDecision,
)
from budget_kernel.selectors import ApprovalSelector, BudgetSelector
from tests.conftest import DEPARTMENT_ID


class TestBudgetSelector:

    def test_period_views_and_totals(
        self, session, budget_ledger, allocation, cost_center_tree, fiscal_periods, test_actor_id
    ):
        coarse = AllocationTuple(
            fiscal_period_id=allocation.fiscal_period_id,
            department_id=DEPARTMENT_ID,
            cost_center_id=cost_center_tree.root.id,
        )
        budget_ledger.activate_budget(allocation, Decimal("1000"), test_actor_id)
        budget_ledger.activate_budget(coarse, Decimal("500"), test_actor_id)
        budget_ledger.reserve(allocation, Decimal("300"), test_actor_id)
        budget_ledger.consume(allocation, Decimal("100"), test_actor_id)

        selector = BudgetSelector(session)
        usages = selector.usages_for_period(allocation.fiscal_period_id)
        assert {u.allocation_key for u in usages} == {allocation.key, coarse.key}
        assert selector.usages_for_department(allocation.fiscal_period_id, "D-OTHER") == []

        totals = selector.totals_for_period(allocation.fiscal_period_id)
        assert totals.tuple_count == 2
        assert totals.approved_amount == Decimal("1500")
        assert totals.reserved_amount == Decimal("300")
        assert totals.consumed_amount == Decimal("100")
        assert totals.available == Decimal("1200")

    def test_empty_period(self, session, fiscal_periods):
        totals = BudgetSelector(session).totals_for_period(fiscal_periods[5].id)
        assert totals.tuple_count == 0
        assert totals.approved_amount == Decimal("0")


class TestApprovalSelector:

    def test_inbox_follows_assignee(self, session, approval_service):
        first = RequestRef(RequestKind.PURCHASE_ORDER, str(uuid4()))
        second = RequestRef(RequestKind.INVOICE, str(uuid4()))
        approval_service.submit(first, ["alice", "bob"], "req")
        approval_service.submit(second, ["alice"], "req")

        selector = ApprovalSelector(session)
        assert {wf.request for wf in selector.inbox("alice")} == {first, second}
        assert [wf.request for wf in selector.inbox("alice", RequestKind.INVOICE)] == [second]
        assert selector.inbox("bob") == []

        approval_service.decide(first, "alice", StepDecision.APPROVE)
        assert [wf.request for wf in selector.inbox("bob")] == [first]
        assert [wf.request for wf in selector.inbox("alice")] == [second]

    def test_resolved_requests_leave_inbox(self, session, approval_service):
        ref = RequestRef(RequestKind.RFQ, str(uuid4()))
        approval_service.submit(ref, ["alice"], "req")
        approval_service.decide(ref, "alice", StepDecision.REJECT, remarks="Duplicate")

        selector = ApprovalSelector(session)
        assert selector.inbox("alice") == []
        rejected = selector.workflows_by_status(RequestStatus.REJECTED, RequestKind.RFQ)
        assert [wf.request for wf in rejected] == [ref]


PO_POLICY = EscalationPolicy(RequestKind.PURCHASE_ORDER, timedelta(hours=48), "cfo")


class TestOverdueSteps:

    def test_step_becomes_overdue_after_timeout(self, session, approval_service, deterministic_clock):
        submitted_at = deterministic_clock.now()
        ref = RequestRef(RequestKind.PURCHASE_ORDER, str(uuid4()))
        approval_service.submit(ref, ["alice", "bob"], "req")
        selector = ApprovalSelector(session)

        deterministic_clock.advance(seconds=47 * 3600)
        assert selector.overdue_steps(deterministic_clock.now(), [PO_POLICY]) == []

        deterministic_clock.advance(seconds=2 * 3600)
        (step,) = selector.overdue_steps(deterministic_clock.now(), [PO_POLICY])
        assert step.workflow.request == ref
        assert step.workflow.current_assignee_id == "alice"
        assert step.opened_at == submitted_at
        assert step.due_at == submitted_at + timedelta(hours=48)
        assert step.escalation_user_id == "cfo"

    def test_kind_without_policy_never_times_out(self, session, approval_service, deterministic_clock):
        approval_service.submit(RequestRef(RequestKind.INVOICE, str(uuid4())), ["alice"], "req")
        deterministic_clock.advance(days=30)
        assert ApprovalSelector(session).overdue_steps(deterministic_clock.now(), [PO_POLICY]) == []

    def test_decision_restarts_the_clock(self, session, approval_service, deterministic_clock):
        ref = RequestRef(RequestKind.PURCHASE_ORDER, str(uuid4()))
        approval_service.submit(ref, ["alice", "bob"], "req")
        deterministic_clock.advance(days=3)
        approval_service.decide(ref, "alice", StepDecision.APPROVE)

        selector = ApprovalSelector(session)
        assert selector.overdue_steps(deterministic_clock.now(), [PO_POLICY]) == []
        deterministic_clock.advance(days=3)
        (step,) = selector.overdue_steps(deterministic_clock.now(), [PO_POLICY])
        assert step.workflow.current_assignee_id == "bob"

    def test_escalated_and_resolved_steps_not_reported(self, session, approval_service, deterministic_clock):
        escalated = RequestRef(RequestKind.PURCHASE_ORDER, str(uuid4()))
        resolved = RequestRef(RequestKind.PURCHASE_ORDER, str(uuid4()))
        approval_service.submit(escalated, ["alice"], "req")
        approval_service.submit(resolved, ["alice"], "req")
        approval_service.decide(resolved, "alice", StepDecision.APPROVE)
        approval_service.escalate(escalated, "cfo", actor_id="scheduler")

        deterministic_clock.advance(days=10)
        assert ApprovalSelector(session).overdue_steps(deterministic_clock.now(), [PO_POLICY]) == []
