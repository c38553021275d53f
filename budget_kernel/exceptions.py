"""
Typed Exception Hierarchy for the Budget Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (HTTP controllers, batch jobs) map engine failures onto responses.
They must be able to do that by type and by a stable machine-readable code,
never by parsing message text:

    try:
        ledger.reserve(allocation, Decimal("500.00"), actor_id)
    except InsufficientBudgetError as e:
        return {"error": e.code, "available": str(e.snapshot.available)}

Every exception therefore:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries structured DATA (tuple key, attempted amount, ledger snapshot)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BudgetKernelError (base)
    |
    +-- ValidationError               caller supplied something malformed
    |   +-- EmptyChainError
    |   +-- MissingReasonError
    |   +-- MissingReferralTargetError
    |   +-- AlreadySubmittedError
    |   +-- DuplicateCodeError
    |   +-- CycleError
    |   +-- HierarchyMismatchError
    |   +-- CostCenterInactiveError
    |   +-- DuplicateBudgetError
    |   +-- InvalidAmountError
    |   +-- InvalidDateRangeError
    |   +-- DuplicateFiscalYearError
    |   +-- FiscalYearOverlapError
    |   +-- PeriodOverlapError          (alias: OverlapError)
    |   +-- PeriodSequenceError         (alias: SequenceError)
    |   +-- PeriodGapError
    |   +-- PeriodOutsideYearError
    |   +-- DuplicateSequenceError
    |
    +-- StateConflictError            the target changed or is in the wrong state
    |   +-- NotAssignedError
    |   |   +-- NoPendingStepError
    |   +-- StaleStepError
    |   +-- PeriodAlreadyClosedError    (alias: AlreadyClosedError)
    |   +-- PeriodImmutableError
    |   +-- FiscalYearImmutableError
    |   +-- InvalidRequestStateError
    |   +-- ImmutabilityViolationError
    |
    +-- BusinessRuleError             the ledger / calendar refuses the move
    |   +-- InsufficientBudgetError
    |   +-- OverConsumptionError
    |   +-- NegativeReservationError
    |   +-- BudgetNotActiveError
    |   +-- PeriodClosedError
    |   +-- SequenceExhaustedError
    |
    +-- NotFoundError
        +-- FiscalYearNotFoundError
        +-- PeriodNotFoundError
        +-- CostCenterNotFoundError
        +-- UnknownTupleError
        +-- SequenceNotFoundError
        +-- WorkflowNotFoundError
        +-- RequestBudgetNotFoundError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. The engine never retries.  A StaleStepError means another approver acted
   first; the caller re-reads ``current_state`` and asks the user again.

2. Every exception raised inside ``session_scope()`` rolls the whole
   transaction back.  No partial ledger or workflow rows survive.

3. Category bases let middleware map groups onto transport codes:
   ValidationError -> 422, StateConflictError -> 409,
   BusinessRuleError -> 422, NotFoundError -> 404.

===============================================================================
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from budget_kernel.domain.dtos import BudgetUsageSnapshot


class BudgetKernelError(Exception):
    """
    Base exception for all budget kernel errors.

    All subclasses carry a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BUDGET_KERNEL_ERROR"


# =============================================================================
# Validation
# =============================================================================


class ValidationError(BudgetKernelError):
    """Base exception for malformed input."""

    code: str = "VALIDATION_ERROR"


class EmptyChainError(ValidationError):
    """A request was submitted with no approvers."""

    code: str = "EMPTY_APPROVER_CHAIN"

    def __init__(self, request_kind: str, request_id: str):
        self.request_kind = request_kind
        self.request_id = request_id
        super().__init__(
            f"Approver chain for {request_kind}:{request_id} is empty"
        )


class MissingReasonError(ValidationError):
    """A rejection was recorded without remarks."""

    code: str = "MISSING_REJECTION_REASON"

    def __init__(self, request_kind: str, request_id: str):
        self.request_kind = request_kind
        self.request_id = request_id
        super().__init__(
            f"Rejecting {request_kind}:{request_id} requires remarks"
        )


class MissingReferralTargetError(ValidationError):
    """A referral was recorded without naming who it is referred to."""

    code: str = "MISSING_REFERRAL_TARGET"

    def __init__(self, request_kind: str, request_id: str):
        self.request_kind = request_kind
        self.request_id = request_id
        super().__init__(
            f"Referring {request_kind}:{request_id} requires a refer_to approver"
        )


class AlreadySubmittedError(ValidationError):
    """The request already has an approval workflow."""

    code: str = "ALREADY_SUBMITTED"

    def __init__(self, request_kind: str, request_id: str):
        self.request_kind = request_kind
        self.request_id = request_id
        super().__init__(f"{request_kind}:{request_id} was already submitted")


class DuplicateCodeError(ValidationError):
    """Cost center code is already in use."""

    code: str = "DUPLICATE_COST_CENTER_CODE"

    def __init__(self, cost_center_code: str):
        self.cost_center_code = cost_center_code
        super().__init__(f"Cost center code already exists: {cost_center_code}")


class CycleError(ValidationError):
    """Parent chain revisits a node or exceeds the depth guard."""

    code: str = "COST_CENTER_CYCLE"

    def __init__(self, cost_center_id: str, path: list[str], reason: str):
        self.cost_center_id = cost_center_id
        self.path = path
        self.reason = reason
        super().__init__(
            f"Cost center hierarchy cycle at {cost_center_id}: {reason} "
            f"(path: {' -> '.join(path)})"
        )


class HierarchyMismatchError(ValidationError):
    """Department / cost center / sub cost center do not nest."""

    code: str = "HIERARCHY_MISMATCH"

    def __init__(
        self,
        cost_center_id: str,
        sub_cost_center_id: str | None,
        department_id: str | None,
        reason: str,
    ):
        self.cost_center_id = cost_center_id
        self.sub_cost_center_id = sub_cost_center_id
        self.department_id = department_id
        self.reason = reason
        super().__init__(f"Hierarchy mismatch for cost center {cost_center_id}: {reason}")


class CostCenterInactiveError(ValidationError):
    """Cost center is not approved or not effective on the date."""

    code: str = "COST_CENTER_INACTIVE"

    def __init__(self, cost_center_id: str, on_date: date):
        self.cost_center_id = cost_center_id
        self.on_date = on_date
        super().__init__(f"Cost center {cost_center_id} is not active on {on_date}")


class DuplicateBudgetError(ValidationError):
    """A budget already exists for the allocation tuple."""

    code: str = "DUPLICATE_BUDGET"

    def __init__(self, allocation_key: str):
        self.allocation_key = allocation_key
        super().__init__(f"Budget already exists for allocation {allocation_key}")


class InvalidAmountError(ValidationError):
    """Amount is zero, negative or not a Decimal."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, amount: Any, reason: str):
        self.amount = amount
        self.reason = reason
        super().__init__(f"Invalid amount {amount!r}: {reason}")


class InvalidDateRangeError(ValidationError):
    """start_date is after end_date."""

    code: str = "INVALID_DATE_RANGE"

    def __init__(self, start_date: date, end_date: date):
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(
            f"start_date ({start_date}) cannot be after end_date ({end_date})"
        )


class DuplicateFiscalYearError(ValidationError):
    """Fiscal year already exists."""

    code: str = "DUPLICATE_FISCAL_YEAR"

    def __init__(self, year: int):
        self.year = year
        super().__init__(f"Fiscal year already exists: {year}")


class FiscalYearOverlapError(ValidationError):
    """Fiscal year date range intersects another year."""

    code: str = "FISCAL_YEAR_OVERLAP"

    def __init__(self, year: int, existing_year: int):
        self.year = year
        self.existing_year = existing_year
        super().__init__(f"Fiscal year {year} overlaps fiscal year {existing_year}")


class PeriodOverlapError(ValidationError):
    """Period date range intersects another period of the same year."""

    code: str = "PERIOD_OVERLAP"

    def __init__(
        self,
        new_period_code: str,
        existing_period_code: str,
        overlap_start: str,
        overlap_end: str,
    ):
        self.new_period_code = new_period_code
        self.existing_period_code = existing_period_code
        self.overlap_start = overlap_start
        self.overlap_end = overlap_end
        super().__init__(
            f"Period {new_period_code} overlaps with {existing_period_code} "
            f"from {overlap_start} to {overlap_end}"
        )


class PeriodSequenceError(ValidationError):
    """Period number is not the next number in its fiscal year."""

    code: str = "PERIOD_SEQUENCE"

    def __init__(self, year: int, period_number: int, expected_number: int):
        self.year = year
        self.period_number = period_number
        self.expected_number = expected_number
        super().__init__(
            f"Fiscal year {year} expects period {expected_number}, got {period_number}"
        )


class PeriodGapError(ValidationError):
    """Period does not start the day after its predecessor ends."""

    code: str = "PERIOD_GAP"

    def __init__(self, period_code: str, expected_start: date, actual_start: date):
        self.period_code = period_code
        self.expected_start = expected_start
        self.actual_start = actual_start
        super().__init__(
            f"Period {period_code} must start on {expected_start}, got {actual_start}"
        )


class PeriodOutsideYearError(ValidationError):
    """Period range falls outside its fiscal year bounds."""

    code: str = "PERIOD_OUTSIDE_YEAR"

    def __init__(self, period_code: str, year: int):
        self.period_code = period_code
        self.year = year
        super().__init__(f"Period {period_code} falls outside fiscal year {year}")


class DuplicateSequenceError(ValidationError):
    """A document sequence already exists for the scope."""

    code: str = "DUPLICATE_SEQUENCE"

    def __init__(self, scope_key: str):
        self.scope_key = scope_key
        super().__init__(f"Document sequence already defined: {scope_key}")


# =============================================================================
# State conflicts
# =============================================================================


class StateConflictError(BudgetKernelError):
    """Base exception for operations against the wrong or a changed state."""

    code: str = "STATE_CONFLICT"


class NotAssignedError(StateConflictError):
    """Actor is not the assignee of the current pending step."""

    code: str = "NOT_ASSIGNED"

    def __init__(
        self,
        request_kind: str,
        request_id: str,
        actor_id: str,
        assignee_id: str | None,
    ):
        self.request_kind = request_kind
        self.request_id = request_id
        self.actor_id = actor_id
        self.assignee_id = assignee_id
        super().__init__(
            f"{actor_id} is not assigned to the pending step of "
            f"{request_kind}:{request_id} (assignee: {assignee_id})"
        )


class NoPendingStepError(NotAssignedError):
    """Request has no pending step (draft or already resolved)."""

    code: str = "NO_PENDING_STEP"

    def __init__(self, request_kind: str, request_id: str, actor_id: str, state: str):
        self.state = state
        super().__init__(request_kind, request_id, actor_id, None)
        self.args = (
            f"{request_kind}:{request_id} has no pending step (state: {state})",
        )


class StaleStepError(StateConflictError):
    """The pending step moved on since the caller read it."""

    code: str = "STALE_STEP"

    def __init__(
        self,
        request_kind: str,
        request_id: str,
        expected_order: int | None,
        actual_order: int | None,
    ):
        self.request_kind = request_kind
        self.request_id = request_id
        self.expected_order = expected_order
        self.actual_order = actual_order
        super().__init__(
            f"Pending step of {request_kind}:{request_id} changed "
            f"(expected order {expected_order}, found {actual_order})"
        )


class PeriodAlreadyClosedError(StateConflictError):
    """Period is already closed."""

    code: str = "PERIOD_ALREADY_CLOSED"

    def __init__(self, period_code: str):
        self.period_code = period_code
        super().__init__(f"Fiscal period {period_code} is already closed")


class PeriodImmutableError(StateConflictError):
    """Closed periods cannot be modified or reopened."""

    code: str = "PERIOD_IMMUTABLE"

    def __init__(self, period_code: str, action: str):
        self.period_code = period_code
        self.action = action
        super().__init__(f"Cannot {action} closed fiscal period {period_code}")


class FiscalYearImmutableError(StateConflictError):
    """Fiscal year bounds are frozen once periods exist."""

    code: str = "FISCAL_YEAR_IMMUTABLE"

    def __init__(self, year: int):
        self.year = year
        super().__init__(f"Fiscal year {year} already has periods and cannot change")


class InvalidRequestStateError(StateConflictError):
    """Request budget is in a status that does not allow the action."""

    code: str = "INVALID_REQUEST_STATE"

    def __init__(self, request_id: str, status: str, action: str):
        self.request_id = request_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} request {request_id} in status {status}")


class ImmutabilityViolationError(StateConflictError):
    """Attempted UPDATE or DELETE of an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"{entity_type} {entity_id}: {reason}")


# =============================================================================
# Business rules
# =============================================================================


class BusinessRuleError(BudgetKernelError):
    """Base exception for ledger and calendar rule violations."""

    code: str = "BUSINESS_RULE_VIOLATION"


class _LedgerRuleError(BusinessRuleError):
    """Shared shape for reserve / consume / release refusals."""

    _verb = "apply"

    def __init__(
        self,
        allocation_key: str,
        amount: Decimal,
        snapshot: BudgetUsageSnapshot,
    ):
        self.allocation_key = allocation_key
        self.amount = amount
        self.snapshot = snapshot
        super().__init__(
            f"Cannot {self._verb} {amount} on {allocation_key}: "
            f"approved={snapshot.approved_amount} "
            f"reserved={snapshot.reserved_amount} "
            f"consumed={snapshot.consumed_amount}"
        )


class InsufficientBudgetError(_LedgerRuleError):
    """Reservation would exceed the approved amount."""

    code: str = "INSUFFICIENT_BUDGET"
    _verb = "reserve"


class OverConsumptionError(_LedgerRuleError):
    """Consumption would exceed the reserved amount."""

    code: str = "OVER_CONSUMPTION"
    _verb = "consume"


class NegativeReservationError(_LedgerRuleError):
    """Release would drop reserved below consumed."""

    code: str = "NEGATIVE_RESERVATION"
    _verb = "release"


class BudgetNotActiveError(BusinessRuleError):
    """Budget is frozen or closed."""

    code: str = "BUDGET_NOT_ACTIVE"

    def __init__(self, allocation_key: str, status: str):
        self.allocation_key = allocation_key
        self.status = status
        super().__init__(f"Budget {allocation_key} is {status}, not Active")


class PeriodClosedError(BusinessRuleError):
    """Posting or ledger movement against a closed period."""

    code: str = "PERIOD_CLOSED"

    def __init__(self, period_code: str):
        self.period_code = period_code
        super().__init__(f"Fiscal period {period_code} is closed")


class SequenceExhaustedError(BusinessRuleError):
    """The next number no longer fits in the padding width."""

    code: str = "SEQUENCE_EXHAUSTED"

    def __init__(self, scope_key: str, next_number: int, padding_length: int):
        self.scope_key = scope_key
        self.next_number = next_number
        self.padding_length = padding_length
        super().__init__(
            f"Sequence {scope_key} exhausted: {next_number} exceeds "
            f"{padding_length} digits"
        )


# =============================================================================
# Not found
# =============================================================================


class NotFoundError(BudgetKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class FiscalYearNotFoundError(NotFoundError):
    """Fiscal year does not exist."""

    code: str = "FISCAL_YEAR_NOT_FOUND"

    def __init__(self, year: int):
        self.year = year
        super().__init__(f"Fiscal year not found: {year}")


class PeriodNotFoundError(NotFoundError):
    """Fiscal period does not exist."""

    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, period_ref: str):
        self.period_ref = period_ref
        super().__init__(f"Fiscal period not found: {period_ref}")


class CostCenterNotFoundError(NotFoundError):
    """Cost center does not exist."""

    code: str = "COST_CENTER_NOT_FOUND"

    def __init__(self, cost_center_id: str):
        self.cost_center_id = cost_center_id
        super().__init__(f"Cost center not found: {cost_center_id}")


class UnknownTupleError(NotFoundError):
    """No budget usage row exists for the allocation tuple."""

    code: str = "UNKNOWN_ALLOCATION"

    def __init__(self, allocation_key: str):
        self.allocation_key = allocation_key
        super().__init__(f"No active budget for allocation {allocation_key}")


class SequenceNotFoundError(NotFoundError):
    """No document sequence is defined for the scope."""

    code: str = "SEQUENCE_NOT_FOUND"

    def __init__(self, scope_key: str):
        self.scope_key = scope_key
        super().__init__(f"Document sequence not found: {scope_key}")


class WorkflowNotFoundError(NotFoundError):
    """Request was never submitted for approval."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, request_kind: str, request_id: str):
        self.request_kind = request_kind
        self.request_id = request_id
        super().__init__(f"No approval workflow for {request_kind}:{request_id}")


class RequestBudgetNotFoundError(NotFoundError):
    """Budget request does not exist or was archived."""

    code: str = "REQUEST_BUDGET_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Budget request not found: {request_id}")


# Short names used by callers of the fiscal calendar
OverlapError = PeriodOverlapError
SequenceError = PeriodSequenceError
AlreadyClosedError = PeriodAlreadyClosedError
