"""
Hypothesis-based property tests.

Properties checked:
- Ledger: any interleaving of reserve / consume / release keeps
  0 <= consumed <= reserved <= approved, and every refused move leaves
  the balances exactly where they were.
- Approval status: derived status depends only on the latest rows.
- Document numbers: strictly increasing by increment_by until the
  padding is exhausted, and never advanced by a refused allocation.

Database-backed properties run each example inside its own savepoint so
examples do not see each other's rows.
"""

from decimal import Decimal

import pytest
from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st

from budget_kernel.domain.dtos import SequenceScope
from budget_kernel.domain.workflow import (
    RequestStatus,
    StepDecision,
    derive_request_status,
)
from budget_kernel.exceptions import (
    InsufficientBudgetError,
    NegativeReservationError,
    OverConsumptionError,
    SequenceExhaustedError,
)

DB_SETTINGS = settings(
    max_examples=40,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)

ledger_moves = st.lists(
    st.tuples(
        st.sampled_from(["reserve", "consume", "release"]),
        st.integers(min_value=1, max_value=400).map(Decimal),
    ),
    min_size=1,
    max_size=25,
)


class TestLedgerInvariant:

    @given(moves=ledger_moves)
    @DB_SETTINGS
    def test_balances_follow_model(self, moves, session, budget_ledger, allocation, test_actor_id):
        savepoint = session.begin_nested()
        try:
            budget_ledger.activate_budget(allocation, Decimal("1000"), test_actor_id)
            approved, reserved, consumed = Decimal("1000"), Decimal("0"), Decimal("0")

            for op, amount in moves:
                if op == "reserve":
                    allowed = reserved + amount <= approved
                    error = InsufficientBudgetError
                elif op == "consume":
                    allowed = consumed + amount <= reserved
                    error = OverConsumptionError
                else:
                    allowed = reserved - amount >= consumed
                    error = NegativeReservationError

                if allowed:
                    getattr(budget_ledger, op)(allocation, amount, test_actor_id)
                    if op == "reserve":
                        reserved += amount
                    elif op == "consume":
                        consumed += amount
                    else:
                        reserved -= amount
                else:
                    with pytest.raises(error):
                        getattr(budget_ledger, op)(allocation, amount, test_actor_id)

                usage = budget_ledger.get_usage(allocation)
                assert (usage.approved_amount, usage.reserved_amount, usage.consumed_amount) == (
                    approved, reserved, consumed,
                )
                assert Decimal("0") <= usage.consumed_amount <= usage.reserved_amount <= usage.approved_amount
        finally:
            savepoint.rollback()


decisions = st.sampled_from(list(StepDecision))


class TestDerivedStatus:

    @given(history=st.lists(decisions, max_size=12), last=st.sampled_from([StepDecision.APPROVE, StepDecision.REJECT]))
    def test_terminal_row_decides(self, history, last):
        expected = RequestStatus.APPROVED if last == StepDecision.APPROVE else RequestStatus.REJECTED
        assert derive_request_status(history + [last]) == expected

    @given(history=st.lists(decisions, max_size=12), pending_run=st.integers(min_value=1, max_value=4))
    def test_trailing_pending_rows_look_through_to_last_decision(self, history, pending_run):
        rows = history + [StepDecision.PENDING] * pending_run
        decided = [s for s in history if s != StepDecision.PENDING]
        expected = (
            RequestStatus.REFERRED
            if decided and decided[-1] == StepDecision.REFER
            else RequestStatus.SUBMITTED
        )
        assert derive_request_status(rows) == expected

    @given(history=st.lists(decisions, min_size=1, max_size=12))
    def test_depends_only_on_suffix(self, history):
        prefix = [StepDecision.APPROVE, StepDecision.PENDING]
        # An all-Pending history looks back into the prefix
        assume(any(s != StepDecision.PENDING for s in history))
        assert derive_request_status(prefix + history) == derive_request_status(history)


class TestSequenceMonotonicity:

    @given(
        starting=st.integers(min_value=0, max_value=90),
        increment=st.integers(min_value=1, max_value=7),
        calls=st.integers(min_value=1, max_value=30),
    )
    @DB_SETTINGS
    def test_increasing_until_exhausted(self, starting, increment, calls, session, document_sequencer, test_actor_id):
        scope = SequenceScope(module="fuzz", document_type="doc")
        savepoint = session.begin_nested()
        try:
            document_sequencer.define_sequence(
                scope, test_actor_id, starting_number=starting, increment_by=increment, padding_length=2
            )
            issued = []
            for _ in range(calls):
                try:
                    issued.append(int(document_sequencer.next_number(scope)))
                except SequenceExhaustedError:
                    assert document_sequencer.current_number(scope) + increment > 99
                    break

            assert issued == [starting + i * increment for i in range(len(issued))]
            assert all(n <= 99 for n in issued)
        finally:
            savepoint.rollback()
