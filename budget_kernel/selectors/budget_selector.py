"""
Module: budget_kernel.selectors.budget_selector
Responsibility: Read-only views over the reservation ledger: every
    tuple's balances for a period or a department, and period totals.
Architecture position: Kernel > Selectors.

Audit relevance:
    Budget-vs-commitment reports read from here.  Nothing in this module
    takes a lock; use BudgetLedgerService for balances that gate a move.
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from budget_kernel.domain.dtos import BudgetUsageSnapshot
from budget_kernel.models.budget import BudgetUsage
from budget_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class PeriodBudgetTotals:
    """Ledger balances summed over every tuple of a period."""

    fiscal_period_id: UUID
    tuple_count: int
    approved_amount: Decimal
    reserved_amount: Decimal
    consumed_amount: Decimal

    @property
    def available(self) -> Decimal:
        return self.approved_amount - self.reserved_amount


def _snapshot(usage: BudgetUsage) -> BudgetUsageSnapshot:
    return BudgetUsageSnapshot(
        allocation_key=usage.allocation_key,
        approved_amount=Decimal(usage.approved_amount),
        reserved_amount=Decimal(usage.reserved_amount),
        consumed_amount=Decimal(usage.consumed_amount),
    )


class BudgetSelector(BaseSelector[BudgetUsage]):
    """Queries over BudgetUsage rows."""

    def usages_for_period(self, fiscal_period_id: UUID) -> list[BudgetUsageSnapshot]:
        result = self.session.execute(
            select(BudgetUsage)
            .where(BudgetUsage.fiscal_period_id == fiscal_period_id)
            .order_by(BudgetUsage.allocation_key)
        )
        return [_snapshot(u) for u in result.scalars().all()]

    def usages_for_department(
        self,
        fiscal_period_id: UUID,
        department_id: str,
    ) -> list[BudgetUsageSnapshot]:
        result = self.session.execute(
            select(BudgetUsage)
            .where(
                BudgetUsage.fiscal_period_id == fiscal_period_id,
                BudgetUsage.department_id == department_id,
            )
            .order_by(BudgetUsage.allocation_key)
        )
        return [_snapshot(u) for u in result.scalars().all()]

    def totals_for_period(self, fiscal_period_id: UUID) -> PeriodBudgetTotals:
        """Sum of approved / reserved / consumed over the period's tuples."""
        row = self.session.execute(
            select(
                func.count(BudgetUsage.id),
                func.coalesce(func.sum(BudgetUsage.approved_amount), 0),
                func.coalesce(func.sum(BudgetUsage.reserved_amount), 0),
                func.coalesce(func.sum(BudgetUsage.consumed_amount), 0),
            ).where(BudgetUsage.fiscal_period_id == fiscal_period_id)
        ).one()
        return PeriodBudgetTotals(
            fiscal_period_id=fiscal_period_id,
            tuple_count=row[0],
            approved_amount=Decimal(str(row[1])),
            reserved_amount=Decimal(str(row[2])),
            consumed_amount=Decimal(str(row[3])),
        )
