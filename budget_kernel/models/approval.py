"""
Module: budget_kernel.models.approval
Responsibility: ORM persistence for approval workflows and their
    append-only transaction history.
Architecture position: Kernel > Models.

Invariants enforced:
    - One ApprovalWorkflow per (request_kind, request_id).
    - ApprovalTransaction rows are append-only: before_update and
      before_delete listeners raise ImmutabilityViolationError.
    - (workflow_id, sequence_no) is unique.  Two approvers racing on the
      same step both try to write the same sequence_no; the loser gets an
      IntegrityError which the service reports as StaleStepError.
    - ApprovalWorkflow carries a version counter (version_id_col) so a
      concurrent update of the aggregate raises StaleDataError.

Failure modes:
    - IntegrityError on a duplicate workflow or sequence_no.
    - ImmutabilityViolationError on transaction UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import ACTOR_ID_LENGTH, TrackedBase, UUIDString
from budget_kernel.domain.workflow import RequestKind, RequestStatus, StepDecision
from budget_kernel.exceptions import ImmutabilityViolationError


class ApprovalWorkflow(TrackedBase):
    """
    Aggregate approval state of one request.

    Contract:
        approver_chain is fixed at submission.  status, current_order and
        current_assignee_id mirror the latest ApprovalTransaction so that
        inbox queries need not replay history.
    """

    __tablename__ = "approval_workflows"

    __table_args__ = (
        UniqueConstraint("request_kind", "request_id", name="uq_workflow_request"),
        Index("idx_workflow_assignee_status", "current_assignee_id", "status"),
        Index("idx_workflow_status_opened", "status", "step_opened_at"),
    )

    request_kind: Mapped[RequestKind] = mapped_column(String(32), nullable=False)

    request_id: Mapped[str] = mapped_column(String(64), nullable=False)

    requester_id: Mapped[str] = mapped_column(String(ACTOR_ID_LENGTH), nullable=False)

    approver_chain: Mapped[list[str]] = mapped_column(JSON, nullable=False)

    status: Mapped[RequestStatus] = mapped_column(
        String(20),
        default=RequestStatus.SUBMITTED,
        nullable=False,
    )

    current_order: Mapped[int | None] = mapped_column(Integer, nullable=True)

    current_assignee_id: Mapped[str | None] = mapped_column(
        String(ACTOR_ID_LENGTH),
        nullable=True,
    )

    last_sequence_no: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # When the open step was assigned to current_assignee_id; drives escalation
    step_opened_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<ApprovalWorkflow {self.request_kind}:{self.request_id} {self.status}>"


class ApprovalTransaction(TrackedBase):
    """
    One step event of a request's approval history.

    A Pending row opens a step for ``assigned_to``.  Approve, Reject and
    Refer rows close it.  A Refer row is always followed by a Pending row
    at the same order for ``referred_to``.
    """

    __tablename__ = "approval_transactions"

    __table_args__ = (
        UniqueConstraint("workflow_id", "sequence_no", name="uq_approval_tx_sequence"),
        CheckConstraint(
            "status IN ('pending', 'approve', 'reject', 'refer')",
            name="ck_approval_tx_status",
        ),
        CheckConstraint("step_order >= 1", name="ck_approval_tx_order"),
        Index("idx_approval_tx_request", "request_kind", "request_id"),
        Index("idx_approval_tx_assignee", "assigned_to", "status"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_workflows.id"),
        nullable=False,
    )

    request_kind: Mapped[RequestKind] = mapped_column(String(32), nullable=False)

    request_id: Mapped[str] = mapped_column(String(64), nullable=False)

    sequence_no: Mapped[int] = mapped_column(Integer, nullable=False)

    step_order: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[StepDecision] = mapped_column(String(20), nullable=False)

    requester_id: Mapped[str] = mapped_column(String(ACTOR_ID_LENGTH), nullable=False)

    assigned_to: Mapped[str] = mapped_column(String(ACTOR_ID_LENGTH), nullable=False)

    referred_to: Mapped[str | None] = mapped_column(
        String(ACTOR_ID_LENGTH),
        nullable=True,
    )

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ApprovalTransaction {self.request_kind}:{self.request_id} "
            f"#{self.sequence_no} order={self.step_order} {self.status}>"
        )


@event.listens_for(ApprovalTransaction, "before_update")
def prevent_transaction_update(mapper, connection, target):
    """Approval history is append-only."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalTransaction",
        entity_id=str(target.id),
        reason="Approval transactions are immutable -- cannot modify",
    )


@event.listens_for(ApprovalTransaction, "before_delete")
def prevent_transaction_delete(mapper, connection, target):
    """Approval history is append-only."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalTransaction",
        entity_id=str(target.id),
        reason="Approval transactions are immutable -- cannot delete",
    )
