"""Services for the budget kernel (write side)."""

from budget_kernel.services.approval_workflow import (
    ApprovalHookRegistry,
    ApprovalHooks,
    ApprovalWorkflowService,
)
from budget_kernel.services.budget_ledger import BudgetLedgerService
from budget_kernel.services.cost_center_service import CostCenterService
from budget_kernel.services.document_sequencer import (
    DocumentSequencerService,
    format_document_number,
)
from budget_kernel.services.fiscal_calendar import FiscalCalendarService, period_code_for
from budget_kernel.services.request_budget import (
    RequestBudgetService,
    budget_request_hooks,
    register_budget_request_hooks,
)

__all__ = [
    "ApprovalHookRegistry",
    "ApprovalHooks",
    "ApprovalWorkflowService",
    "BudgetLedgerService",
    "CostCenterService",
    "DocumentSequencerService",
    "FiscalCalendarService",
    "RequestBudgetService",
    "budget_request_hooks",
    "format_document_number",
    "period_code_for",
    "register_budget_request_hooks",
]
