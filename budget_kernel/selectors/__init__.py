"""Selectors for the budget kernel (read side)."""

from budget_kernel.selectors.approval_selector import ApprovalSelector
from budget_kernel.selectors.budget_selector import BudgetSelector, PeriodBudgetTotals

__all__ = [
    "ApprovalSelector",
    "BudgetSelector",
    "PeriodBudgetTotals",
]
