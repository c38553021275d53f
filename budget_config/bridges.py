"""
Bridges from an EngineConfig into kernel-compatible inputs.

The kernel never imports ``budget_config``; these helpers translate the
frozen config into the calls the kernel exposes.
"""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy.engine import Engine

from budget_config.schema import EngineConfig
from budget_kernel.db.engine import init_engine_from_url
from budget_kernel.domain.clock import Clock, SystemClock
from budget_kernel.domain.dtos import ApprovalWorkflowInfo, EscalationPolicy
from budget_kernel.domain.workflow import RequestKind
from budget_kernel.exceptions import NoPendingStepError, StaleStepError
from budget_kernel.logging_config import LogContext, configure_logging, get_logger
from budget_kernel.selectors.approval_selector import ApprovalSelector
from budget_kernel.services.approval_workflow import ApprovalWorkflowService
from budget_kernel.services.cost_center_service import CostCenterService

logger = get_logger("bridges.escalation")


def init_runtime(config: EngineConfig) -> Engine:
    """Configure logging and the global engine from ``config``."""
    configure_logging(level=config.logging.level)
    return init_engine_from_url(
        config.database.url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
        pool_timeout=config.database.pool_timeout,
    )


def build_cost_center_service(config: EngineConfig, session, clock=None) -> CostCenterService:
    return CostCenterService(session, clock, max_depth=config.hierarchy.max_depth)


def approver_chain(config: EngineConfig, request_kind) -> tuple[str, ...]:
    """
    The configured approvers for ``request_kind``.

    Raises:
        KeyError: If no chain is configured for the kind.
    """
    chain = config.approval_chain_for(request_kind)
    if chain is None:
        raise KeyError(f"no approval chain configured for {getattr(request_kind, 'value', request_kind)}")
    return chain.approvers


def escalation_policies(config: EngineConfig) -> tuple[EscalationPolicy, ...]:
    """One policy per approval chain that sets ``timeout_hours``."""
    return tuple(
        EscalationPolicy(
            request_kind=RequestKind(chain.request_kind),
            timeout=timedelta(hours=chain.timeout_hours),
            escalation_user_id=chain.escalation_user_id,
        )
        for chain in config.approval_chains
        if chain.timeout_hours is not None
    )


def escalate_overdue(
    config: EngineConfig,
    approvals: ApprovalWorkflowService,
    actor_id: str,
    clock: Clock | None = None,
) -> list[ApprovalWorkflowInfo]:
    """
    Hand every overdue step to its chain's escalation user.

    Meant for a periodic job; flushes through ``approvals`` and leaves the
    commit to the caller.  Overdue steps of chains without an escalation
    user are only logged.  A step that moved on while the job ran is
    skipped.

    Returns:
        The workflows that were escalated.
    """
    now = (clock or SystemClock()).now()
    overdue = ApprovalSelector(approvals.session).overdue_steps(
        now, escalation_policies(config)
    )

    escalated: list[ApprovalWorkflowInfo] = []
    for step in overdue:
        wf = step.workflow
        with LogContext.bind(
            request_kind=wf.request.kind.value, request_id=wf.request.id, actor_id=actor_id
        ):
            if not step.escalation_user_id:
                logger.warning(
                    "approval_step_overdue",
                    extra={"assignee_id": wf.current_assignee_id, "due_at": step.due_at},
                )
                continue
            try:
                escalated.append(
                    approvals.escalate(
                        wf.request,
                        step.escalation_user_id,
                        actor_id,
                        expected_order=wf.current_order,
                    )
                )
            except (StaleStepError, NoPendingStepError) as exc:
                logger.info("approval_escalation_skipped", extra={"reason": exc.code})

    logger.info(
        "approval_escalation_run",
        extra={"overdue_count": len(overdue), "escalated_count": len(escalated)},
    )
    return escalated
