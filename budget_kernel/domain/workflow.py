"""
Approval workflow domain types (``budget_kernel.domain.workflow``).

Responsibility
--------------
Closed enumerations shared by every approvable request kind, the tagged
request reference, the aggregate status state machine, and the pure
function that derives a request's status from its approval history.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/`` or ``selectors/``.

Invariants enforced
-------------------
* The aggregate status of a request is a pure function of its ordered
  approval-transaction statuses (``derive_request_status``).
* ``REQUEST_TRANSITIONS`` lists the only valid aggregate moves.  Approved
  and Rejected are terminal.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable


class RequestKind(str, Enum):
    """Every document type that goes through sequential approval."""

    BUDGET_REQUEST = "budget_request"
    MATERIAL_REQUEST = "material_request"
    PURCHASE_ORDER = "purchase_order"
    PAYMENT_ORDER = "payment_order"
    INVOICE = "invoice"
    RFQ = "rfq"


class RequestStatus(str, Enum):
    """Aggregate status of an approvable request.

    ``PENDING`` is carried for request rows imported in their legacy
    awaiting state; the engine itself derives ``SUBMITTED`` for an open
    step.
    """

    DRAFT = "draft"
    SUBMITTED = "submitted"
    REFERRED = "referred"
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"


class StepDecision(str, Enum):
    """Status of a single approval-transaction row."""

    PENDING = "pending"
    APPROVE = "approve"
    REJECT = "reject"
    REFER = "refer"


ACTIONABLE_DECISIONS: frozenset[StepDecision] = frozenset({
    StepDecision.APPROVE,
    StepDecision.REJECT,
    StepDecision.REFER,
})


REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.DRAFT: frozenset({RequestStatus.SUBMITTED}),
    RequestStatus.PENDING: frozenset({RequestStatus.SUBMITTED}),
    RequestStatus.SUBMITTED: frozenset({
        RequestStatus.SUBMITTED,
        RequestStatus.REFERRED,
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
    }),
    RequestStatus.REFERRED: frozenset({
        RequestStatus.SUBMITTED,
        RequestStatus.REFERRED,
        RequestStatus.APPROVED,
        RequestStatus.REJECTED,
    }),
    RequestStatus.APPROVED: frozenset(),
    RequestStatus.REJECTED: frozenset(),
}

TERMINAL_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
})

IN_FLIGHT_REQUEST_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.SUBMITTED,
    RequestStatus.REFERRED,
    RequestStatus.PENDING,
})


@dataclass(frozen=True)
class RequestRef:
    """Tagged reference to the request an approval transaction belongs to.

    Replaces one nullable foreign key per request kind with a single
    (kind, id) pair.
    """

    kind: RequestKind
    id: str

    def __post_init__(self) -> None:
        if not isinstance(self.kind, RequestKind):
            object.__setattr__(self, "kind", RequestKind(self.kind))
        object.__setattr__(self, "id", str(self.id))
        if not self.id:
            raise ValueError("RequestRef.id must be non-empty")

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


def derive_request_status(history: Iterable[StepDecision]) -> RequestStatus:
    """Derive the aggregate status from ordered transaction statuses.

    - no rows: Draft
    - latest Approve: Approved; latest Reject: Rejected
    - latest Pending: Referred when the closest earlier non-Pending row is
      a Refer (escalation reassignments leave Pending rows behind),
      Submitted otherwise
    """
    statuses = [StepDecision(s) for s in history]
    if not statuses:
        return RequestStatus.DRAFT

    latest = statuses[-1]
    if latest == StepDecision.APPROVE:
        return RequestStatus.APPROVED
    if latest == StepDecision.REJECT:
        return RequestStatus.REJECTED
    if latest == StepDecision.REFER:
        # A Refer row is always followed by its Pending row in the same
        # write; seeing it last means the history was read mid-write.
        return RequestStatus.REFERRED

    for status in reversed(statuses[:-1]):
        if status == StepDecision.PENDING:
            continue
        if status == StepDecision.REFER:
            return RequestStatus.REFERRED
        break
    return RequestStatus.SUBMITTED


def is_valid_transition(current: RequestStatus, target: RequestStatus) -> bool:
    """Check an aggregate status move against REQUEST_TRANSITIONS."""
    return target in REQUEST_TRANSITIONS.get(current, frozenset())
