"""
Pure domain layer.

Value objects, enumerations and the approval status derivation, with NO
dependencies on the ORM, the database or I/O.
"""

from budget_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from budget_kernel.domain.dtos import (
    AllocationTuple,
    ApprovalTransactionInfo,
    ApprovalWorkflowInfo,
    BudgetInfo,
    BudgetStatus,
    BudgetUsageSnapshot,
    CostCenterInfo,
    CostCenterStatus,
    CostCenterType,
    DocumentSequenceInfo,
    FiscalPeriodInfo,
    FiscalYearInfo,
    PeriodStatus,
    RequestBudgetInfo,
    SequenceScope,
    Urgency,
)
from budget_kernel.domain.notifications import (
    Notification,
    NotificationDispatcher,
    NotificationEvent,
    NullNotificationDispatcher,
    RecordingNotificationDispatcher,
)
from budget_kernel.domain.workflow import (
    RequestKind,
    RequestRef,
    RequestStatus,
    StepDecision,
    derive_request_status,
)

__all__ = [
    "AllocationTuple",
    "ApprovalTransactionInfo",
    "ApprovalWorkflowInfo",
    "BudgetInfo",
    "BudgetStatus",
    "BudgetUsageSnapshot",
    "Clock",
    "CostCenterInfo",
    "CostCenterStatus",
    "CostCenterType",
    "DeterministicClock",
    "DocumentSequenceInfo",
    "FiscalPeriodInfo",
    "FiscalYearInfo",
    "Notification",
    "NotificationDispatcher",
    "NotificationEvent",
    "NullNotificationDispatcher",
    "PeriodStatus",
    "RecordingNotificationDispatcher",
    "RequestBudgetInfo",
    "RequestKind",
    "RequestRef",
    "RequestStatus",
    "SequenceScope",
    "StepDecision",
    "SystemClock",
    "Urgency",
    "derive_request_status",
]
