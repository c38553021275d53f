"""
ApprovalWorkflowService -- sequential, multi-step approval of any request.

Responsibility:
    Drives every approvable request kind (budget requests, material
    requests, purchase orders, payment orders, invoices, RFQs) through an
    ordered approver chain: submit, then one decision per step (approve,
    reject, refer), with escalation for stuck steps.  Runs the per-kind
    hooks that connect approval to the budget ledger.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by request controllers; calls registered ApprovalHooks, which
    typically call BudgetLedgerService or RequestBudgetService.

Invariants enforced:
    - Approval history is append-only (ORM listeners on
      ApprovalTransaction).  A request's status is derived from its
      latest transaction rows (``derive_request_status``).
    - Only the assignee of the latest Pending row may decide it.
    - Optimistic concurrency: a decision made against a step that moved
      on raises StaleStepError.  The guards are the caller's
      ``expected_order``, the workflow's version counter and the unique
      (workflow_id, sequence_no) index.  The engine never retries.
    - Hooks run inside the caller's transaction; a hook exception
      propagates so the caller rolls the whole decision back.
    - Notification failures are logged and never undo a decision.

Failure modes:
    - EmptyChainError, AlreadySubmittedError
    - NotAssignedError / NoPendingStepError
    - StaleStepError
    - MissingReasonError (reject), MissingReferralTargetError (refer)

Audit relevance:
    Every appended row is logged as ``approval_decision_recorded`` with the
    request reference, order, decision and actor.
"""

from dataclasses import dataclass
from typing import Callable, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from budget_kernel.domain.clock import Clock
from budget_kernel.domain.dtos import ApprovalTransactionInfo, ApprovalWorkflowInfo
from budget_kernel.domain.notifications import NotificationDispatcher, NotificationEvent
from budget_kernel.domain.workflow import (
    ACTIONABLE_DECISIONS,
    RequestKind,
    RequestRef,
    RequestStatus,
    StepDecision,
    derive_request_status,
)
from budget_kernel.exceptions import (
    AlreadySubmittedError,
    EmptyChainError,
    MissingReasonError,
    MissingReferralTargetError,
    NoPendingStepError,
    NotAssignedError,
    StaleStepError,
    WorkflowNotFoundError,
)
from budget_kernel.logging_config import LogContext, get_logger
from budget_kernel.models.approval import ApprovalTransaction, ApprovalWorkflow
from budget_kernel.services.base import BaseService

logger = get_logger("services.approval_workflow")


# =============================================================================
# Hooks
# =============================================================================


TransitionHook = Callable[[Session, ApprovalWorkflowInfo, ApprovalTransactionInfo], None]
ApprovedHook = Callable[[Session, ApprovalWorkflowInfo], None]


@dataclass(frozen=True)
class ApprovalHooks:
    """
    Callbacks for one request kind.

    ``on_transition`` runs after every submit / decide / escalate with the
    workflow after the move and the row that closed (or opened) the step.
    ``on_approved`` runs once, after the final approval.
    """

    on_transition: TransitionHook | None = None
    on_approved: ApprovedHook | None = None


class ApprovalHookRegistry:
    """Maps each RequestKind to its ApprovalHooks."""

    def __init__(self) -> None:
        self._hooks: dict[RequestKind, ApprovalHooks] = {}

    def register(self, kind: RequestKind, hooks: ApprovalHooks) -> None:
        self._hooks[RequestKind(kind)] = hooks

    def unregister(self, kind: RequestKind) -> None:
        self._hooks.pop(RequestKind(kind), None)

    def get(self, kind: RequestKind) -> ApprovalHooks:
        return self._hooks.get(RequestKind(kind), ApprovalHooks())


# =============================================================================
# Service
# =============================================================================


class ApprovalWorkflowService(BaseService[ApprovalWorkflow]):
    """
    Sequential approval engine.

    Contract:
        ``submit`` opens order 1 for ``approver_chain[0]``.  Each ``decide``
        closes the open step and either opens the next one, resolves the
        request, or (refer) reopens the same order for another approver.

    Guarantees:
        - Flush-only; the caller commits.
        - A failed decision leaves no rows behind (savepoint).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        dispatcher: NotificationDispatcher | None = None,
        hooks: ApprovalHookRegistry | None = None,
    ):
        super().__init__(session, clock, dispatcher)
        self._hooks = hooks or ApprovalHookRegistry()

    # =========================================================================
    # DTO conversion
    # =========================================================================

    def _workflow_to_dto(self, wf: ApprovalWorkflow) -> ApprovalWorkflowInfo:
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

    def _tx_to_dto(self, tx: ApprovalTransaction) -> ApprovalTransactionInfo:
        return ApprovalTransactionInfo(
            id=tx.id,
            request=RequestRef(RequestKind(tx.request_kind), tx.request_id),
            sequence_no=tx.sequence_no,
            order=tx.step_order,
            status=StepDecision(tx.status),
            requester_id=tx.requester_id,
            assigned_to=tx.assigned_to,
            created_by_id=tx.created_by_id,
            referred_to=tx.referred_to,
            description=tx.description,
            created_at=tx.created_at,
        )

    # =========================================================================
    # Submit
    # =========================================================================

    def submit(
        self,
        ref: RequestRef,
        approver_chain: Sequence[str],
        requester_id: str,
        description: str | None = None,
    ) -> ApprovalWorkflowInfo:
        """
        Start approval of a request.

        Postconditions:
            - One ApprovalWorkflow (status SUBMITTED, current_order 1).
            - One Pending ApprovalTransaction (order 1, assigned to
              approver_chain[0]).

        Raises:
            EmptyChainError: If approver_chain is empty.
            AlreadySubmittedError: If the request already has a workflow.
        """
        chain = [str(a) for a in approver_chain]
        if not chain:
            raise EmptyChainError(ref.kind.value, ref.id)
        if any(not a for a in chain):
            raise ValueError(f"approver_chain for {ref} contains a blank approver id")

        if self._get_workflow_orm(ref) is not None:
            raise AlreadySubmittedError(ref.kind.value, ref.id)

        with LogContext.bind(
            request_kind=ref.kind.value, request_id=ref.id, actor_id=requester_id
        ):
            wf = ApprovalWorkflow(
                request_kind=ref.kind,
                request_id=ref.id,
                requester_id=requester_id,
                approver_chain=chain,
                status=RequestStatus.SUBMITTED,
                current_order=1,
                current_assignee_id=chain[0],
                last_sequence_no=0,
                submitted_at=self._clock.now(),
                step_opened_at=self._clock.now(),
                created_by_id=requester_id,
            )

            savepoint = self.session.begin_nested()
            try:
                self.session.add(wf)
                self.session.flush()
                tx = self._append(
                    wf,
                    order=1,
                    status=StepDecision.PENDING,
                    assigned_to=chain[0],
                    actor_id=requester_id,
                    description=description,
                )
                self.session.flush()
                savepoint.commit()
            except IntegrityError:
                savepoint.rollback()
                raise AlreadySubmittedError(ref.kind.value, ref.id)

            logger.info(
                "approval_submitted",
                extra={"approver_chain": chain, "first_approver": chain[0]},
            )

            wf_info = self._workflow_to_dto(wf)
            self._run_transition_hook(ref, wf_info, self._tx_to_dto(tx))
            self._notify(NotificationEvent.REQUEST_SUBMITTED, ref.id, [chain[0]])
            return wf_info

    # =========================================================================
    # Decide
    # =========================================================================

    def decide(
        self,
        ref: RequestRef,
        acting_approver_id: str,
        decision: StepDecision,
        remarks: str | None = None,
        refer_to: str | None = None,
        expected_order: int | None = None,
    ) -> ApprovalWorkflowInfo:
        """
        Record the acting approver's decision on the open step.

        Args:
            ref: The request.
            acting_approver_id: Who is deciding.
            decision: APPROVE, REJECT or REFER.
            remarks: Required for REJECT.  Stored on the decision row.
            refer_to: Required for REFER.  Receives the same step.
            expected_order: The step order the caller saw.  If the open
                step has moved on, StaleStepError is raised.  Without it,
                an approver repeating the decision that closed the step
                (the loser of a race for that step) also gets
                StaleStepError.

        Returns:
            The workflow after the decision.

        Raises:
            NoPendingStepError: If the request is Draft, Approved or Rejected
                and the caller was not acting on its final step.
            StaleStepError: If the step moved on since the caller read it.
            NotAssignedError: If the actor is not the open step's assignee
                (including an approver whose step was referred or escalated
                away).
            MissingReasonError: REJECT without remarks.
            MissingReferralTargetError: REFER without refer_to.
        """
        decision = StepDecision(decision)
        if decision not in ACTIONABLE_DECISIONS:
            raise ValueError(f"{decision.value} is not a decision")

        with LogContext.bind(
            request_kind=ref.kind.value, request_id=ref.id, actor_id=acting_approver_id
        ):
            wf, pending = self._open_step(ref, acting_approver_id, expected_order)

            if pending.assigned_to != acting_approver_id:
                closed = self._closed_previous_step(wf, pending, acting_approver_id)
                if closed is not None:
                    logger.warning(
                        "approval_stale_step",
                        extra={
                            "expected_order": closed.step_order,
                            "actual_order": pending.step_order,
                        },
                    )
                    raise StaleStepError(
                        ref.kind.value, ref.id, closed.step_order, pending.step_order
                    )
                logger.warning(
                    "approval_actor_not_assigned",
                    extra={"assignee_id": pending.assigned_to},
                )
                raise NotAssignedError(
                    ref.kind.value, ref.id, acting_approver_id, pending.assigned_to
                )

            if decision == StepDecision.REJECT and not (remarks and remarks.strip()):
                raise MissingReasonError(ref.kind.value, ref.id)
            if decision == StepDecision.REFER and not refer_to:
                raise MissingReferralTargetError(ref.kind.value, ref.id)

            order = pending.step_order
            chain = list(wf.approver_chain)
            now = self._clock.now()

            savepoint = self.session.begin_nested()
            try:
                decided = self._append(
                    wf,
                    order=order,
                    status=decision,
                    assigned_to=acting_approver_id,
                    actor_id=acting_approver_id,
                    description=remarks,
                    referred_to=refer_to if decision == StepDecision.REFER else None,
                )

                if decision == StepDecision.APPROVE and order < len(chain):
                    next_approver = chain[order]
                    self._append(
                        wf,
                        order=order + 1,
                        status=StepDecision.PENDING,
                        assigned_to=next_approver,
                        actor_id=acting_approver_id,
                    )
                    wf.current_order = order + 1
                    wf.current_assignee_id = next_approver
                    wf.step_opened_at = now
                elif decision == StepDecision.REFER:
                    self._append(
                        wf,
                        order=order,
                        status=StepDecision.PENDING,
                        assigned_to=refer_to,
                        actor_id=acting_approver_id,
                    )
                    wf.current_assignee_id = refer_to
                    wf.step_opened_at = now
                else:
                    # Final approval or rejection
                    wf.current_assignee_id = None
                    wf.resolved_at = now
                    wf.step_opened_at = None

                wf.status = self._derive_status(wf)
                wf.updated_by_id = acting_approver_id
                self.session.flush()
                savepoint.commit()
            except (IntegrityError, StaleDataError):
                savepoint.rollback()
                actual = self._current_order(ref)
                logger.warning(
                    "approval_stale_step",
                    extra={"expected_order": order, "actual_order": actual},
                )
                raise StaleStepError(ref.kind.value, ref.id, order, actual)

            logger.info(
                "approval_decision_recorded",
                extra={
                    "order": order,
                    "decision": decision.value,
                    "referred_to": refer_to,
                    "status": RequestStatus(wf.status).value,
                },
            )

            wf_info = self._workflow_to_dto(wf)
            self._run_transition_hook(ref, wf_info, self._tx_to_dto(decided))
            if wf_info.status == RequestStatus.APPROVED:
                self._run_approved_hook(ref, wf_info)

            self._notify_decision(wf_info, decision, refer_to)
            return wf_info

    # =========================================================================
    # Escalate
    # =========================================================================

    def escalate(
        self,
        ref: RequestRef,
        escalation_user_id: str,
        actor_id: str,
        expected_order: int | None = None,
        remarks: str | None = None,
    ) -> ApprovalWorkflowInfo:
        """
        Reassign the open step (same order) to ``escalation_user_id``.

        Used when an approver does not act within the workflow's timeout.

        Raises:
            NoPendingStepError: If the request has no open step.
            StaleStepError: If the step moved on since the caller read it.
        """
        if not escalation_user_id:
            raise ValueError("escalation_user_id must be non-empty")

        with LogContext.bind(request_kind=ref.kind.value, request_id=ref.id, actor_id=actor_id):
            wf, pending = self._open_step(ref, actor_id, expected_order)
            order = pending.step_order
            previous_assignee = pending.assigned_to

            savepoint = self.session.begin_nested()
            try:
                opened = self._append(
                    wf,
                    order=order,
                    status=StepDecision.PENDING,
                    assigned_to=escalation_user_id,
                    actor_id=actor_id,
                    description=remarks or f"escalated from {previous_assignee}",
                )
                wf.current_assignee_id = escalation_user_id
                wf.step_opened_at = self._clock.now()
                wf.status = self._derive_status(wf)
                wf.updated_by_id = actor_id
                self.session.flush()
                savepoint.commit()
            except (IntegrityError, StaleDataError):
                savepoint.rollback()
                actual = self._current_order(ref)
                raise StaleStepError(ref.kind.value, ref.id, order, actual)

            logger.info(
                "approval_escalated",
                extra={
                    "order": order,
                    "previous_assignee": previous_assignee,
                    "escalation_user_id": escalation_user_id,
                },
            )

            wf_info = self._workflow_to_dto(wf)
            self._run_transition_hook(ref, wf_info, self._tx_to_dto(opened))
            self._notify(
                NotificationEvent.REQUEST_ESCALATED, ref.id, [escalation_user_id]
            )
            return wf_info

    # =========================================================================
    # Queries
    # =========================================================================

    def current_state(self, ref: RequestRef) -> RequestStatus:
        """Status derived from the request's approval history (Draft if none)."""
        statuses = self.session.execute(
            select(ApprovalTransaction.status)
            .where(
                ApprovalTransaction.request_kind == ref.kind.value,
                ApprovalTransaction.request_id == ref.id,
            )
            .order_by(ApprovalTransaction.sequence_no)
        ).scalars().all()
        return derive_request_status(statuses)

    def history(self, ref: RequestRef) -> tuple[ApprovalTransactionInfo, ...]:
        """Every approval row of the request, oldest first."""
        rows = self.session.execute(
            select(ApprovalTransaction)
            .where(
                ApprovalTransaction.request_kind == ref.kind.value,
                ApprovalTransaction.request_id == ref.id,
            )
            .order_by(ApprovalTransaction.sequence_no)
        ).scalars().all()
        return tuple(self._tx_to_dto(tx) for tx in rows)

    def get_workflow(self, ref: RequestRef) -> ApprovalWorkflowInfo:
        """
        Raises:
            WorkflowNotFoundError: If the request was never submitted.
        """
        wf = self._get_workflow_orm(ref)
        if wf is None:
            raise WorkflowNotFoundError(ref.kind.value, ref.id)
        return self._workflow_to_dto(wf)

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_workflow_orm(self, ref: RequestRef) -> ApprovalWorkflow | None:
        return self.session.execute(
            select(ApprovalWorkflow)
            .where(
                ApprovalWorkflow.request_kind == ref.kind.value,
                ApprovalWorkflow.request_id == ref.id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _latest_transaction(self, wf: ApprovalWorkflow) -> ApprovalTransaction | None:
        return self.session.execute(
            select(ApprovalTransaction)
            .where(ApprovalTransaction.workflow_id == wf.id)
            .order_by(ApprovalTransaction.sequence_no.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _open_step(
        self,
        ref: RequestRef,
        actor_id: str,
        expected_order: int | None,
    ) -> tuple[ApprovalWorkflow, ApprovalTransaction]:
        """
        The workflow and its latest row, which must be Pending.

        A resolved request whose final step the caller was acting on (by
        ``expected_order``, or by having recorded that decision itself) is
        stale rather than step-less: the caller lost a race for that step.
        """
        wf = self._get_workflow_orm(ref)
        latest = self._latest_transaction(wf) if wf is not None else None

        if latest is not None and StepDecision(latest.status) in (
            StepDecision.APPROVE,
            StepDecision.REJECT,
        ):
            lost_race = (
                expected_order == latest.step_order
                if expected_order is not None
                else latest.created_by_id == actor_id
            )
            if lost_race:
                logger.warning(
                    "approval_stale_step",
                    extra={"expected_order": latest.step_order, "actual_order": None},
                )
                raise StaleStepError(ref.kind.value, ref.id, latest.step_order, None)

        if latest is None or StepDecision(latest.status) != StepDecision.PENDING:
            state = self.current_state(ref)
            logger.warning("approval_no_pending_step", extra={"state": state.value})
            raise NoPendingStepError(ref.kind.value, ref.id, actor_id, state.value)

        if expected_order is not None and expected_order != latest.step_order:
            logger.warning(
                "approval_stale_step",
                extra={"expected_order": expected_order, "actual_order": latest.step_order},
            )
            raise StaleStepError(ref.kind.value, ref.id, expected_order, latest.step_order)

        return wf, latest

    def _closed_previous_step(
        self,
        wf: ApprovalWorkflow,
        pending: ApprovalTransaction,
        actor_id: str,
    ) -> ApprovalTransaction | None:
        """The decision row ``actor_id`` wrote just before ``pending`` moved the chain on."""
        previous = self.session.execute(
            select(ApprovalTransaction).where(
                ApprovalTransaction.workflow_id == wf.id,
                ApprovalTransaction.sequence_no == pending.sequence_no - 1,
            )
        ).scalar_one_or_none()
        if (
            previous is not None
            and StepDecision(previous.status) != StepDecision.PENDING
            and previous.created_by_id == actor_id
            and previous.step_order < pending.step_order
        ):
            return previous
        return None

    def _append(
        self,
        wf: ApprovalWorkflow,
        *,
        order: int,
        status: StepDecision,
        assigned_to: str,
        actor_id: str,
        description: str | None = None,
        referred_to: str | None = None,
    ) -> ApprovalTransaction:
        wf.last_sequence_no = wf.last_sequence_no + 1
        tx = ApprovalTransaction(
            workflow_id=wf.id,
            request_kind=wf.request_kind,
            request_id=wf.request_id,
            sequence_no=wf.last_sequence_no,
            step_order=order,
            status=status,
            requester_id=wf.requester_id,
            assigned_to=assigned_to,
            referred_to=referred_to,
            description=description,
            created_by_id=actor_id,
        )
        self.session.add(tx)
        return tx

    def _derive_status(self, wf: ApprovalWorkflow) -> RequestStatus:
        self.session.flush()
        statuses = self.session.execute(
            select(ApprovalTransaction.status)
            .where(ApprovalTransaction.workflow_id == wf.id)
            .order_by(ApprovalTransaction.sequence_no)
        ).scalars().all()
        return derive_request_status(statuses)

    def _current_order(self, ref: RequestRef) -> int | None:
        return self.session.execute(
            select(ApprovalWorkflow.current_order).where(
                ApprovalWorkflow.request_kind == ref.kind.value,
                ApprovalWorkflow.request_id == ref.id,
            )
        ).scalar_one_or_none()

    def _run_transition_hook(
        self,
        ref: RequestRef,
        wf_info: ApprovalWorkflowInfo,
        tx_info: ApprovalTransactionInfo,
    ) -> None:
        hook = self._hooks.get(ref.kind).on_transition
        if hook is not None:
            hook(self.session, wf_info, tx_info)

    def _run_approved_hook(self, ref: RequestRef, wf_info: ApprovalWorkflowInfo) -> None:
        hook = self._hooks.get(ref.kind).on_approved
        if hook is not None:
            logger.debug("approval_hook_running")
            hook(self.session, wf_info)

    def _notify_decision(
        self,
        wf_info: ApprovalWorkflowInfo,
        decision: StepDecision,
        refer_to: str | None,
    ) -> None:
        request_id = wf_info.request.id
        if wf_info.status == RequestStatus.APPROVED:
            self._notify(
                NotificationEvent.REQUEST_APPROVED, request_id, [wf_info.requester_id]
            )
        elif wf_info.status == RequestStatus.REJECTED:
            self._notify(
                NotificationEvent.REQUEST_REJECTED, request_id, [wf_info.requester_id]
            )
        elif decision == StepDecision.REFER:
            self._notify(NotificationEvent.REQUEST_REFERRED, request_id, [refer_to])
        else:
            self._notify(
                NotificationEvent.STEP_ASSIGNED,
                request_id,
                [wf_info.current_assignee_id],
            )
