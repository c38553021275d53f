"""
Module: budget_kernel.selectors.approval_selector
Responsibility: Read-only approval queries: an approver's inbox,
    workflows by derived status, and open steps past their escalation
    timeout.
Architecture position: Kernel > Selectors.
"""

from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import select

from budget_kernel.domain.dtos import ApprovalWorkflowInfo, EscalationPolicy, OverdueStep
from budget_kernel.domain.workflow import (
    IN_FLIGHT_REQUEST_STATUSES,
    RequestKind,
    RequestRef,
    RequestStatus,
)
from budget_kernel.models.approval import ApprovalWorkflow
from budget_kernel.selectors.base import BaseSelector


class ApprovalSelector(BaseSelector[ApprovalWorkflow]):
    """Queries over ApprovalWorkflow rows."""

    def _to_dto(self, wf: ApprovalWorkflow) -> ApprovalWorkflowInfo:
        return ApprovalWorkflowInfo(
            id=wf.id,
            request=RequestRef(RequestKind(wf.request_kind), wf.request_id),
            requester_id=wf.requester_id,
            approver_chain=tuple(wf.approver_chain),
            status=RequestStatus(wf.status),
            current_order=wf.current_order,
            current_assignee_id=wf.current_assignee_id,
            submitted_at=wf.submitted_at,
            resolved_at=wf.resolved_at,
            step_opened_at=wf.step_opened_at,
        )

    def inbox(
        self,
        approver_id: str,
        request_kind: RequestKind | None = None,
    ) -> list[ApprovalWorkflowInfo]:
        """Requests waiting on ``approver_id``, oldest submission first."""
        stmt = select(ApprovalWorkflow).where(
            ApprovalWorkflow.current_assignee_id == approver_id,
            ApprovalWorkflow.status.in_([s.value for s in IN_FLIGHT_REQUEST_STATUSES]),
        )
        if request_kind is not None:
            stmt = stmt.where(ApprovalWorkflow.request_kind == RequestKind(request_kind).value)
        stmt = stmt.order_by(ApprovalWorkflow.submitted_at, ApprovalWorkflow.request_id)
        return [self._to_dto(wf) for wf in self.session.execute(stmt).scalars().all()]

    def workflows_by_status(
        self,
        status: RequestStatus,
        request_kind: RequestKind | None = None,
    ) -> list[ApprovalWorkflowInfo]:
        stmt = select(ApprovalWorkflow).where(
            ApprovalWorkflow.status == RequestStatus(status).value
        )
        if request_kind is not None:
            stmt = stmt.where(ApprovalWorkflow.request_kind == RequestKind(request_kind).value)
        stmt = stmt.order_by(ApprovalWorkflow.submitted_at, ApprovalWorkflow.request_id)
        return [self._to_dto(wf) for wf in self.session.execute(stmt).scalars().all()]

    def overdue_steps(
        self,
        now: datetime,
        policies: Iterable[EscalationPolicy],
    ) -> list[OverdueStep]:
        """
        In-flight requests whose open step has waited longer than its policy's
        timeout, oldest first.

        Kinds without a policy never time out.  A step that was already
        escalated to the policy's escalation user is not reported again.
        """
        overdue: list[OverdueStep] = []
        for policy in policies:
            kind = RequestKind(policy.request_kind).value
            stmt = select(ApprovalWorkflow).where(
                ApprovalWorkflow.request_kind == kind,
                ApprovalWorkflow.status.in_([s.value for s in IN_FLIGHT_REQUEST_STATUSES]),
                ApprovalWorkflow.step_opened_at.is_not(None),
                ApprovalWorkflow.step_opened_at <= now - policy.timeout,
            )
            if policy.escalation_user_id:
                stmt = stmt.where(
                    ApprovalWorkflow.current_assignee_id != policy.escalation_user_id
                )
            for wf in self.session.execute(stmt).scalars().all():
                opened_at = _as_utc(wf.step_opened_at)
                overdue.append(
                    OverdueStep(
                        workflow=self._to_dto(wf),
                        opened_at=opened_at,
                        due_at=opened_at + policy.timeout,
                        escalation_user_id=policy.escalation_user_id,
                    )
                )
        overdue.sort(key=lambda step: (step.opened_at, step.workflow.request.id))
        return overdue


def _as_utc(value: datetime) -> datetime:
    # SQLite hands DateTime(timezone=True) back naive; values are written in UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
