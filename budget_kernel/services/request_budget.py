"""
RequestBudgetService -- budget requests and their approval hooks.

Responsibility:
    Owns the RequestBudget document: a department asks for budget on an
    allocation tuple, the request goes through the approval engine as
    ``RequestKind.BUDGET_REQUEST``, and on final approval the hooks
    activate (or top up) the budget in the ledger.

Architecture position:
    Kernel > Services -- imperative shell.
    Calls ApprovalWorkflowService (submit) and, from inside the approval
    hooks, BudgetLedgerService.

Invariants enforced:
    - ``status`` mirrors the approval engine's derived state; only the
      transition hook writes it.
    - Final approval, budget activation and the request's ``budget_id``
      land in the same transaction.  A ledger error raised in the hook
      propagates and the caller rolls the approval back.
    - A request in flight (submitted / referred) cannot be archived.

Failure modes:
    - RequestBudgetNotFoundError, InvalidRequestStateError,
      NotAssignedError (propose_amount by someone other than the
      current approver), plus anything the ledger raises on approval.
"""

from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from budget_kernel.domain.clock import Clock
from budget_kernel.domain.dtos import (
    AllocationTuple,
    ApprovalTransactionInfo,
    ApprovalWorkflowInfo,
    RequestBudgetInfo,
    Urgency,
)
from budget_kernel.domain.notifications import NotificationDispatcher
from budget_kernel.domain.workflow import (
    IN_FLIGHT_REQUEST_STATUSES,
    RequestKind,
    RequestRef,
    RequestStatus,
)
from budget_kernel.exceptions import (
    InvalidRequestStateError,
    NotAssignedError,
    RequestBudgetNotFoundError,
)
from budget_kernel.logging_config import LogContext, get_logger
from budget_kernel.models.approval import ApprovalTransaction
from budget_kernel.models.budget import RequestBudget
from budget_kernel.services.approval_workflow import (
    ApprovalHookRegistry,
    ApprovalHooks,
    ApprovalWorkflowService,
)
from budget_kernel.services.base import BaseService
from budget_kernel.services.budget_ledger import BudgetLedgerService, require_positive
from budget_kernel.services.cost_center_service import CostCenterService
from budget_kernel.services.fiscal_calendar import FiscalCalendarService

logger = get_logger("services.request_budget")


def budget_request_hooks(
    clock: Clock | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> ApprovalHooks:
    """
    ApprovalHooks for ``RequestKind.BUDGET_REQUEST``.

    Each hook builds its services on the session the engine passes in, so
    the ledger work joins the approval's transaction.
    """

    def on_transition(
        session: Session,
        wf_info: ApprovalWorkflowInfo,
        tx_info: ApprovalTransactionInfo,
    ) -> None:
        RequestBudgetService(session, clock, dispatcher).sync_status(wf_info)

    def on_approved(session: Session, wf_info: ApprovalWorkflowInfo) -> None:
        RequestBudgetService(session, clock, dispatcher).apply_approval(wf_info)

    return ApprovalHooks(on_transition=on_transition, on_approved=on_approved)


def register_budget_request_hooks(
    registry: ApprovalHookRegistry,
    clock: Clock | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> ApprovalHookRegistry:
    registry.register(RequestKind.BUDGET_REQUEST, budget_request_hooks(clock, dispatcher))
    return registry


class RequestBudgetService(BaseService[RequestBudget]):
    """
    Service for budget requests.

    Contract:
        Returns frozen ``RequestBudgetInfo`` DTOs.  When no approval
        service is given, one is built with the budget request hooks
        registered on a fresh registry.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        dispatcher: NotificationDispatcher | None = None,
        approvals: ApprovalWorkflowService | None = None,
        ledger: BudgetLedgerService | None = None,
    ):
        super().__init__(session, clock, dispatcher)
        self._calendar = FiscalCalendarService(session, self._clock)
        self._cost_centers = CostCenterService(session, self._clock)
        self._ledger = ledger or BudgetLedgerService(
            session,
            self._clock,
            self._dispatcher,
            calendar=self._calendar,
            cost_centers=self._cost_centers,
        )
        self._approvals = approvals
        if self._approvals is None:
            registry = register_budget_request_hooks(
                ApprovalHookRegistry(), self._clock, self._dispatcher
            )
            self._approvals = ApprovalWorkflowService(
                session, self._clock, self._dispatcher, hooks=registry
            )

    def _to_dto(self, request: RequestBudget) -> RequestBudgetInfo:
        return RequestBudgetInfo(
            id=request.id,
            allocation=request.allocation,
            requested_amount=Decimal(request.requested_amount),
            status=RequestStatus(request.status),
            urgency=Urgency(request.urgency),
            budget_category_id=request.budget_category_id,
            previous_year_amount=request.previous_year_amount,
            proposed_amount=request.proposed_amount,
            approved_amount=request.approved_amount,
            reason_for_increase=request.reason_for_increase,
            budget_id=request.budget_id,
            deleted_at=request.deleted_at,
        )

    # =========================================================================
    # Document lifecycle
    # =========================================================================

    def create_draft(
        self,
        allocation: AllocationTuple,
        requested_amount: Decimal,
        actor_id: str,
        urgency: Urgency = Urgency.MEDIUM,
        budget_category_id: str | None = None,
        previous_year_amount: Decimal | None = None,
        reason_for_increase: str | None = None,
    ) -> RequestBudgetInfo:
        """
        Create a Draft budget request.

        Raises:
            InvalidAmountError: If requested_amount is not positive.
            PeriodNotFoundError / PeriodClosedError: If the period cannot
                take a budget.
            HierarchyMismatchError: If the tuple does not nest.
        """
        requested_amount = require_positive(requested_amount)
        self._calendar.assert_postable(allocation.fiscal_period_id)
        self._cost_centers.validate_allocation(
            allocation.department_id,
            allocation.cost_center_id,
            allocation.sub_cost_center_id,
        )

        request = RequestBudget(
            fiscal_period_id=allocation.fiscal_period_id,
            department_id=allocation.department_id,
            cost_center_id=allocation.cost_center_id,
            sub_cost_center_id=allocation.sub_cost_center_id,
            requested_amount=requested_amount,
            urgency=Urgency(urgency),
            budget_category_id=budget_category_id,
            previous_year_amount=previous_year_amount,
            reason_for_increase=reason_for_increase,
            status=RequestStatus.DRAFT,
            created_by_id=actor_id,
        )
        self.session.add(request)
        self.session.flush()

        logger.info(
            "budget_request_created",
            extra={
                "budget_request_id": str(request.id),
                "allocation_key": allocation.key,
                "requested_amount": requested_amount,
                "actor_id": actor_id,
            },
        )
        return self._to_dto(request)

    def submit(
        self,
        request_id: UUID,
        approver_chain: Sequence[str],
        actor_id: str,
    ) -> ApprovalWorkflowInfo:
        """
        Send a Draft request into approval.

        Raises:
            RequestBudgetNotFoundError: If the request does not exist or
                was archived.
            InvalidRequestStateError: If the request is not Draft.
            EmptyChainError: If approver_chain is empty.
        """
        request = self._get_live(request_id)
        if RequestStatus(request.status) != RequestStatus.DRAFT:
            raise InvalidRequestStateError(
                str(request_id), RequestStatus(request.status).value, "submit"
            )
        return self._approvals.submit(
            self._ref(request_id),
            approver_chain,
            requester_id=actor_id,
            description=request.reason_for_increase,
        )

    def propose_amount(
        self,
        request_id: UUID,
        amount: Decimal,
        actor_id: str,
    ) -> RequestBudgetInfo:
        """
        Set the amount the request will be approved for.

        Only the approver currently holding the request may do this.

        Raises:
            InvalidRequestStateError: If the request is not in approval.
            NotAssignedError: If actor_id is not the current assignee.
        """
        amount = require_positive(amount)
        request = self._get_live(request_id)
        status = RequestStatus(request.status)
        if status not in IN_FLIGHT_REQUEST_STATUSES:
            raise InvalidRequestStateError(str(request_id), status.value, "propose an amount for")

        ref = self._ref(request_id)
        workflow = self._approvals.get_workflow(ref)
        if workflow.current_assignee_id != actor_id:
            raise NotAssignedError(
                ref.kind.value, ref.id, actor_id, workflow.current_assignee_id
            )

        request.proposed_amount = amount
        request.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "budget_request_amount_proposed",
            extra={
                "budget_request_id": str(request_id),
                "proposed_amount": amount,
                "actor_id": actor_id,
            },
        )
        return self._to_dto(request)

    def archive(self, request_id: UUID, actor_id: str) -> RequestBudgetInfo:
        """
        Soft-delete a request.  Archiving twice is a no-op.

        Raises:
            InvalidRequestStateError: If the request is submitted or referred.
        """
        request = self._get_orm(request_id)
        status = RequestStatus(request.status)
        if status in IN_FLIGHT_REQUEST_STATUSES:
            raise InvalidRequestStateError(str(request_id), status.value, "archive")

        if request.deleted_at is None:
            request.deleted_at = self._clock.now()
            request.updated_by_id = actor_id
            self.session.flush()
            logger.info(
                "budget_request_archived",
                extra={"budget_request_id": str(request_id), "actor_id": actor_id},
            )
        return self._to_dto(request)

    def get(self, request_id: UUID) -> RequestBudgetInfo:
        """
        Raises:
            RequestBudgetNotFoundError: If the request does not exist.
        """
        return self._to_dto(self._get_orm(request_id))

    # =========================================================================
    # Hook targets
    # =========================================================================

    def sync_status(self, wf_info: ApprovalWorkflowInfo) -> None:
        """Copy the engine's derived status onto the request row."""
        request = self._get_orm(UUID(wf_info.request.id))
        previous = RequestStatus(request.status)
        if previous == wf_info.status:
            return
        request.status = wf_info.status
        self.session.flush()
        logger.info(
            "budget_request_status_synced",
            extra={
                "budget_request_id": wf_info.request.id,
                "from_status": previous.value,
                "to_status": wf_info.status.value,
            },
        )

    def apply_approval(self, wf_info: ApprovalWorkflowInfo) -> RequestBudgetInfo:
        """
        Fund the approved request.

        Activates a budget for the tuple, or tops up the existing one, with
        the proposed amount (falling back to the requested amount).
        """
        request = self._get_orm(UUID(wf_info.request.id))
        allocation = request.allocation
        amount = Decimal(
            request.proposed_amount
            if request.proposed_amount is not None
            else request.requested_amount
        )
        approver_id = self._final_approver(wf_info)

        with LogContext.bind(allocation_key=allocation.key, actor_id=approver_id):
            existing = self._ledger.get_budget(allocation)
            if existing is None:
                budget = self._ledger.activate_budget(
                    allocation,
                    amount,
                    actor_id=approver_id,
                    notify=(wf_info.requester_id,),
                )
                budget_id = budget.id
            else:
                self._ledger.increase_allocation(allocation, amount, actor_id=approver_id)
                budget_id = existing.id

            request.approved_amount = amount
            request.budget_id = budget_id
            request.updated_by_id = approver_id
            self.session.flush()

            logger.info(
                "budget_request_funded",
                extra={
                    "budget_request_id": wf_info.request.id,
                    "approved_amount": amount,
                    "budget_id": str(budget_id),
                    "topped_up": existing is not None,
                },
            )
        return self._to_dto(request)

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _ref(request_id: UUID) -> RequestRef:
        return RequestRef(RequestKind.BUDGET_REQUEST, str(request_id))

    def _get_orm(self, request_id: UUID) -> RequestBudget:
        request = self.session.get(RequestBudget, request_id)
        if request is None:
            raise RequestBudgetNotFoundError(str(request_id))
        return request

    def _get_live(self, request_id: UUID) -> RequestBudget:
        request = self._get_orm(request_id)
        if request.deleted_at is not None:
            raise RequestBudgetNotFoundError(str(request_id))
        return request

    def _final_approver(self, wf_info: ApprovalWorkflowInfo) -> str:
        """Who recorded the last row of the workflow (the final Approve)."""
        return self.session.execute(
            select(ApprovalTransaction.created_by_id)
            .where(ApprovalTransaction.workflow_id == wf_info.id)
            .order_by(ApprovalTransaction.sequence_no.desc())
            .limit(1)
        ).scalar_one()
