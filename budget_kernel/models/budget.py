"""
Module: budget_kernel.models.budget
Responsibility: ORM persistence for budgets, their reservation ledger rows,
    and the budget requests that create or top them up.
Architecture position: Kernel > Models.

Invariants enforced:
    - One Budget and one BudgetUsage per allocation tuple (unique
      allocation_key; the key spells a missing sub cost center as "-" so
      NULLs still collide).
    - 0 <= consumed_amount <= reserved_amount <= approved_amount on every
      BudgetUsage row (check constraints back the service-level checks).

Failure modes:
    - IntegrityError on a duplicate allocation_key or a ledger row that
      violates the ordering constraints.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import TrackedBase, UUIDString
from budget_kernel.domain.dtos import (
    AllocationTuple,
    BudgetStatus,
    Urgency,
)
from budget_kernel.domain.workflow import RequestStatus

ALLOCATION_KEY_LENGTH = 200


class _AllocationColumns:
    """Columns shared by every row keyed on an allocation tuple."""

    fiscal_period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_periods.id"),
        nullable=False,
    )

    department_id: Mapped[str] = mapped_column(String(64), nullable=False)

    cost_center_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("cost_centers.id"),
        nullable=False,
    )

    sub_cost_center_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("cost_centers.id"),
        nullable=True,
    )

    @property
    def allocation(self) -> AllocationTuple:
        return AllocationTuple(
            fiscal_period_id=self.fiscal_period_id,
            department_id=self.department_id,
            cost_center_id=self.cost_center_id,
            sub_cost_center_id=self.sub_cost_center_id,
        )


class Budget(_AllocationColumns, TrackedBase):
    """Planned and actual figures for one allocation tuple."""

    __tablename__ = "budgets"

    __table_args__ = (
        UniqueConstraint("allocation_key", name="uq_budget_allocation"),
        CheckConstraint(
            "status IN ('pending', 'active', 'frozen', 'closed')",
            name="ck_budget_status",
        ),
        Index("idx_budget_period_department", "fiscal_period_id", "department_id"),
    )

    allocation_key: Mapped[str] = mapped_column(
        String(ALLOCATION_KEY_LENGTH),
        nullable=False,
    )

    planned_revenue: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    planned_expense: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    actual_revenue: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    actual_expense: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    status: Mapped[BudgetStatus] = mapped_column(
        String(20),
        default=BudgetStatus.PENDING,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Budget {self.allocation_key}: {self.status}>"


class BudgetUsage(_AllocationColumns, TrackedBase):
    """
    Reservation ledger row.

    approved -> what may be committed at all
    reserved -> committed by approved documents (e.g. purchase orders)
    consumed -> actually spent against those commitments
    """

    __tablename__ = "budget_usages"

    __table_args__ = (
        UniqueConstraint("allocation_key", name="uq_budget_usage_allocation"),
        UniqueConstraint("budget_id", name="uq_budget_usage_budget"),
        CheckConstraint("consumed_amount >= 0", name="ck_usage_consumed_non_negative"),
        CheckConstraint(
            "consumed_amount <= reserved_amount",
            name="ck_usage_consumed_within_reserved",
        ),
        CheckConstraint(
            "reserved_amount <= approved_amount",
            name="ck_usage_reserved_within_approved",
        ),
        Index("idx_usage_period_department", "fiscal_period_id", "department_id"),
    )

    budget_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("budgets.id"),
        nullable=False,
    )

    allocation_key: Mapped[str] = mapped_column(
        String(ALLOCATION_KEY_LENGTH),
        nullable=False,
    )

    approved_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    reserved_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    consumed_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<BudgetUsage {self.allocation_key}: "
            f"{self.consumed_amount}/{self.reserved_amount}/{self.approved_amount}>"
        )


class RequestBudget(_AllocationColumns, TrackedBase):
    """
    A department's request for (more) budget on an allocation tuple.

    Goes through the approval workflow as RequestKind.BUDGET_REQUEST.
    Archived rows keep their history; deleted_at marks them.
    """

    __tablename__ = "request_budgets"

    __table_args__ = (
        CheckConstraint("requested_amount > 0", name="ck_request_amount_positive"),
        CheckConstraint(
            "status IN ('draft', 'submitted', 'referred', 'approved', "
            "'rejected', 'pending')",
            name="ck_request_budget_status",
        ),
        CheckConstraint(
            "urgency IN ('high', 'medium', 'low')",
            name="ck_request_budget_urgency",
        ),
        Index("idx_request_budget_status", "status"),
    )

    budget_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("budgets.id"),
        nullable=True,
    )

    budget_category_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    previous_year_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    requested_amount: Mapped[Decimal] = mapped_column(nullable=False)

    # Set by the approver currently holding the request
    proposed_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    approved_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    urgency: Mapped[Urgency] = mapped_column(
        String(10),
        default=Urgency.MEDIUM,
        nullable=False,
    )

    reason_for_increase: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[RequestStatus] = mapped_column(
        String(20),
        default=RequestStatus.DRAFT,
        nullable=False,
    )

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<RequestBudget {self.id}: {self.requested_amount} {self.status}>"
