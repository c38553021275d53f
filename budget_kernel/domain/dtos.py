"""
Data Transfer Objects and shared enumerations.

Services return these frozen dataclasses, never ORM instances.  Everything
here is pure: no ORM, no session, no clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from budget_kernel.domain.workflow import (
    RequestKind,
    RequestRef,
    RequestStatus,
    StepDecision,
)

# =============================================================================
# Enumerations
# =============================================================================


class PeriodStatus(str, Enum):
    """Fiscal period lifecycle: OPEN -> ADJUSTING -> CLOSED, or OPEN -> CLOSED."""

    OPEN = "open"
    ADJUSTING = "adjusting"
    CLOSED = "closed"


class CostCenterType(str, Enum):
    FIXED = "fixed"
    VARIABLE = "variable"
    SUPPORT = "support"
    DIRECT = "direct"


class CostCenterStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"


class BudgetStatus(str, Enum):
    """Budget lifecycle: PENDING -> ACTIVE -> FROZEN/CLOSED."""

    PENDING = "pending"
    ACTIVE = "active"
    FROZEN = "frozen"
    CLOSED = "closed"


class Urgency(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# =============================================================================
# Fiscal calendar
# =============================================================================


@dataclass(frozen=True)
class FiscalYearInfo:
    id: UUID
    year: int
    name: str
    start_date: date
    end_date: date


@dataclass(frozen=True)
class FiscalPeriodInfo:
    """
    Immutable snapshot of a fiscal period.

    Guarantees:
        - ``is_postable`` is False once the period is CLOSED.
    """

    id: UUID
    fiscal_year: int
    period_number: int
    period_code: str
    name: str
    start_date: date
    end_date: date
    status: PeriodStatus
    transaction_closed_upto: date | None = None
    closed_at: datetime | None = None
    closed_by_id: str | None = None

    @property
    def is_postable(self) -> bool:
        return self.status != PeriodStatus.CLOSED

    def contains_date(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date


# =============================================================================
# Cost centers
# =============================================================================


@dataclass(frozen=True)
class CostCenterInfo:
    id: UUID
    code: str
    name: str
    cost_center_type: CostCenterType
    status: CostCenterStatus
    effective_start_date: date
    parent_id: UUID | None = None
    department_id: str | None = None
    effective_end_date: date | None = None
    manager_id: str | None = None
    budget_owner_id: str | None = None
    description: str | None = None


# =============================================================================
# Budget ledger
# =============================================================================


@dataclass(frozen=True)
class AllocationTuple:
    """
    The (fiscal period, department, cost center, sub cost center) key that
    identifies one budget line.

    ``key`` is the canonical string form stored in a unique column, so two
    tuples without a sub cost center still collide.
    """

    fiscal_period_id: UUID
    department_id: str
    cost_center_id: UUID
    sub_cost_center_id: UUID | None = None

    @property
    def key(self) -> str:
        sub = str(self.sub_cost_center_id) if self.sub_cost_center_id else "-"
        return (
            f"{self.fiscal_period_id}:{self.department_id}:"
            f"{self.cost_center_id}:{sub}"
        )

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class BudgetUsageSnapshot:
    """Point-in-time ledger balances for one allocation tuple."""

    allocation_key: str
    approved_amount: Decimal
    reserved_amount: Decimal
    consumed_amount: Decimal

    @property
    def available(self) -> Decimal:
        """Amount that can still be reserved."""
        return self.approved_amount - self.reserved_amount

    @property
    def outstanding_reservation(self) -> Decimal:
        """Reserved but not yet consumed."""
        return self.reserved_amount - self.consumed_amount


@dataclass(frozen=True)
class BudgetInfo:
    id: UUID
    allocation: AllocationTuple
    status: BudgetStatus
    planned_expense: Decimal
    actual_expense: Decimal
    planned_revenue: Decimal
    actual_revenue: Decimal


# =============================================================================
# Approval workflow
# =============================================================================


@dataclass(frozen=True)
class ApprovalTransactionInfo:
    """One append-only row of a request's approval history."""

    id: UUID
    request: RequestRef
    sequence_no: int
    order: int
    status: StepDecision
    requester_id: str
    assigned_to: str
    created_by_id: str
    referred_to: str | None = None
    description: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalWorkflowInfo:
    id: UUID
    request: RequestRef
    requester_id: str
    approver_chain: tuple[str, ...]
    status: RequestStatus
    current_order: int | None
    current_assignee_id: str | None
    submitted_at: datetime | None = None
    resolved_at: datetime | None = None
    step_opened_at: datetime | None = None

    @property
    def is_final_step(self) -> bool:
        return self.current_order is not None and self.current_order >= len(
            self.approver_chain
        )


@dataclass(frozen=True)
class EscalationPolicy:
    """How long a step of ``request_kind`` may stay open, and who takes it over."""

    request_kind: RequestKind
    timeout: timedelta
    escalation_user_id: str | None = None


@dataclass(frozen=True)
class OverdueStep:
    workflow: ApprovalWorkflowInfo
    opened_at: datetime
    due_at: datetime
    escalation_user_id: str | None


# =============================================================================
# Budget requests
# =============================================================================


@dataclass(frozen=True)
class RequestBudgetInfo:
    id: UUID
    allocation: AllocationTuple
    requested_amount: Decimal
    status: RequestStatus
    urgency: Urgency
    budget_category_id: str | None = None
    previous_year_amount: Decimal | None = None
    proposed_amount: Decimal | None = None
    approved_amount: Decimal | None = None
    reason_for_increase: str | None = None
    budget_id: UUID | None = None
    deleted_at: datetime | None = None

    @property
    def request_ref(self) -> RequestRef:
        return RequestRef(RequestKind.BUDGET_REQUEST, str(self.id))


# =============================================================================
# Document sequences
# =============================================================================


@dataclass(frozen=True)
class SequenceScope:
    """Identifies one document counter."""

    module: str
    document_type: str
    company_id: str | None = None
    branch_id: str | None = None
    fiscal_year: int | None = None

    @property
    def key(self) -> str:
        return ":".join(
            str(part) if part is not None else "-"
            for part in (
                self.company_id,
                self.branch_id,
                self.module,
                self.document_type,
                self.fiscal_year,
            )
        )

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class DocumentSequenceInfo:
    id: UUID
    scope: SequenceScope
    prefix: str
    suffix: str
    starting_number: int
    current_number: int
    increment_by: int
    padding_length: int
    format_pattern: str | None = None
