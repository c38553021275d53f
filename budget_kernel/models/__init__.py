"""ORM models for the budget kernel."""

from budget_kernel.models.approval import ApprovalTransaction, ApprovalWorkflow
from budget_kernel.models.budget import Budget, BudgetUsage, RequestBudget
from budget_kernel.models.cost_center import CostCenter
from budget_kernel.models.document_sequence import DocumentSequence
from budget_kernel.models.fiscal_period import FiscalPeriod, FiscalYear

__all__ = [
    "ApprovalTransaction",
    "ApprovalWorkflow",
    "Budget",
    "BudgetUsage",
    "CostCenter",
    "DocumentSequence",
    "FiscalPeriod",
    "FiscalYear",
    "RequestBudget",
]
