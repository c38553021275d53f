"""
BudgetLedgerService -- budget activation and the reservation ledger.

Responsibility:
    Turns an approved budget into a ledger row per allocation tuple and
    moves money through it: reserve (commit funds to a document), consume
    (record actual spend against a reservation), release (hand unspent
    reservation back).

Architecture position:
    Kernel > Services -- imperative shell.
    Called from approval hooks (purchase order approval reserves, invoice
    posting consumes, cancellation releases) and by RequestBudgetService.

Invariants enforced:
    - 0 <= consumed <= reserved <= approved, checked under a row lock and
      backed by database check constraints.
    - Every mutation is one read-modify-write on the locked usage row.
      Concurrent reservations on the same tuple serialize; their sum can
      never exceed approved.
    - The fiscal period is checked postable before every mutation.
    - At most one Budget / BudgetUsage per allocation tuple.
    - Flush-only: never commits.

Failure modes:
    - UnknownTupleError: no budget was activated for the tuple.
    - InsufficientBudgetError / OverConsumptionError /
      NegativeReservationError: carry the tuple key, the attempted amount
      and a snapshot of the row as it was when the move was refused.
    - BudgetNotActiveError: the budget is frozen or closed.
    - PeriodClosedError, HierarchyMismatchError, CostCenterInactiveError,
      DuplicateBudgetError, InvalidAmountError.

Audit relevance:
    Each movement logs the allocation key, amount, actor and resulting
    balances.  Refusals log at WARNING.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from budget_kernel.domain.clock import Clock
from budget_kernel.domain.dtos import (
    AllocationTuple,
    BudgetInfo,
    BudgetStatus,
    BudgetUsageSnapshot,
)
from budget_kernel.domain.notifications import NotificationDispatcher, NotificationEvent
from budget_kernel.exceptions import (
    BudgetNotActiveError,
    CostCenterInactiveError,
    DuplicateBudgetError,
    InsufficientBudgetError,
    InvalidAmountError,
    NegativeReservationError,
    OverConsumptionError,
    UnknownTupleError,
)
from budget_kernel.logging_config import LogContext, get_logger
from budget_kernel.models.budget import Budget, BudgetUsage
from budget_kernel.services.base import BaseService
from budget_kernel.services.cost_center_service import CostCenterService
from budget_kernel.services.fiscal_calendar import FiscalCalendarService

logger = get_logger("services.budget_ledger")


def require_positive(amount: Decimal) -> Decimal:
    if isinstance(amount, bool) or not isinstance(amount, (Decimal, int)):
        raise InvalidAmountError(amount, "amount must be a Decimal")
    amount = Decimal(amount)
    if not amount.is_finite():
        raise InvalidAmountError(amount, "amount must be finite")
    if amount <= 0:
        raise InvalidAmountError(amount, "amount must be positive")
    return amount


def _snapshot(usage: BudgetUsage) -> BudgetUsageSnapshot:
    return BudgetUsageSnapshot(
        allocation_key=usage.allocation_key,
        approved_amount=Decimal(usage.approved_amount),
        reserved_amount=Decimal(usage.reserved_amount),
        consumed_amount=Decimal(usage.consumed_amount),
    )


class BudgetLedgerService(BaseService[BudgetUsage]):
    """
    Service for budget activation and ledger movements.

    Contract:
        Amounts are positive Decimals.  Each call returns the
        ``BudgetUsageSnapshot`` after the move.

    Guarantees:
        - ``SELECT ... FOR UPDATE`` on the usage row serializes concurrent
          moves on the same tuple.
        - A refused move leaves the row untouched.

    Non-goals:
        - Does NOT decide *when* to reserve; approval hooks do.
        - Does NOT call ``session.commit()``.
    """

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        dispatcher: NotificationDispatcher | None = None,
        calendar: FiscalCalendarService | None = None,
        cost_centers: CostCenterService | None = None,
    ):
        super().__init__(session, clock, dispatcher)
        self._calendar = calendar or FiscalCalendarService(session, self._clock)
        self._cost_centers = cost_centers or CostCenterService(session, self._clock)

    def _budget_to_dto(self, budget: Budget) -> BudgetInfo:
        return BudgetInfo(
            id=budget.id,
            allocation=budget.allocation,
            status=BudgetStatus(budget.status),
            planned_expense=budget.planned_expense,
            actual_expense=budget.actual_expense,
            planned_revenue=budget.planned_revenue,
            actual_revenue=budget.actual_revenue,
        )

    # =========================================================================
    # Activation
    # =========================================================================

    def activate_budget(
        self,
        allocation: AllocationTuple,
        planned_amount: Decimal,
        actor_id: str,
        planned_revenue: Decimal = Decimal("0"),
        notify: tuple[str, ...] = (),
    ) -> BudgetInfo:
        """
        Create an Active budget and its ledger row for a tuple.

        Postconditions:
            - Budget(status=ACTIVE, planned_expense=planned_amount).
            - BudgetUsage(approved=planned_amount, reserved=0, consumed=0).

        Raises:
            InvalidAmountError: If planned_amount is not positive.
            PeriodClosedError / PeriodNotFoundError: If the period is not postable.
            HierarchyMismatchError: If the tuple does not nest.
            CostCenterInactiveError: If a cost center is not active on the
                period's start date.
            DuplicateBudgetError: If the tuple already has a budget.
        """
        planned_amount = require_positive(planned_amount)
        period = self._calendar.assert_postable(allocation.fiscal_period_id, lock=True)

        self._cost_centers.validate_allocation(
            allocation.department_id,
            allocation.cost_center_id,
            allocation.sub_cost_center_id,
        )
        for cc_id in (allocation.cost_center_id, allocation.sub_cost_center_id):
            if cc_id is not None and not self._cost_centers.is_active(
                cc_id, period.start_date
            ):
                raise CostCenterInactiveError(str(cc_id), period.start_date)

        key = allocation.key
        existing = self.session.execute(
            select(Budget.id).where(Budget.allocation_key == key)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateBudgetError(key)

        budget = Budget(
            fiscal_period_id=allocation.fiscal_period_id,
            department_id=allocation.department_id,
            cost_center_id=allocation.cost_center_id,
            sub_cost_center_id=allocation.sub_cost_center_id,
            allocation_key=key,
            planned_expense=planned_amount,
            planned_revenue=planned_revenue,
            actual_expense=Decimal("0"),
            actual_revenue=Decimal("0"),
            status=BudgetStatus.ACTIVE,
            created_by_id=actor_id,
        )
        usage = BudgetUsage(
            fiscal_period_id=allocation.fiscal_period_id,
            department_id=allocation.department_id,
            cost_center_id=allocation.cost_center_id,
            sub_cost_center_id=allocation.sub_cost_center_id,
            allocation_key=key,
            approved_amount=planned_amount,
            reserved_amount=Decimal("0"),
            consumed_amount=Decimal("0"),
            created_by_id=actor_id,
        )

        # A concurrent activation of the same tuple loses on the unique key.
        savepoint = self.session.begin_nested()
        try:
            self.session.add(budget)
            self.session.flush()
            usage.budget_id = budget.id
            self.session.add(usage)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.warning("budget_activation_race", extra={"allocation_key": key})
            raise DuplicateBudgetError(key)

        logger.info(
            "budget_activated",
            extra={
                "allocation_key": key,
                "planned_amount": planned_amount,
                "actor_id": actor_id,
            },
        )
        self._notify(NotificationEvent.BUDGET_ACTIVATED, str(budget.id), notify)
        return self._budget_to_dto(budget)

    def increase_allocation(
        self,
        allocation: AllocationTuple,
        amount: Decimal,
        actor_id: str,
    ) -> BudgetUsageSnapshot:
        """
        Top up an existing budget (supplementary budget request).

        Raises:
            UnknownTupleError, BudgetNotActiveError, PeriodClosedError,
            InvalidAmountError
        """
        amount = require_positive(amount)
        usage, budget = self._lock_for_movement(allocation)

        usage.approved_amount = usage.approved_amount + amount
        usage.updated_by_id = actor_id
        budget.planned_expense = budget.planned_expense + amount
        budget.updated_by_id = actor_id
        self.session.flush()

        snapshot = _snapshot(usage)
        logger.info(
            "budget_allocation_increased",
            extra={
                "allocation_key": allocation.key,
                "amount": amount,
                "approved_amount": snapshot.approved_amount,
                "actor_id": actor_id,
            },
        )
        return snapshot

    def freeze_budget(self, allocation: AllocationTuple, actor_id: str) -> BudgetInfo:
        """Active -> Frozen.  Frozen budgets refuse every movement."""
        return self._set_status(allocation, BudgetStatus.FROZEN, actor_id)

    def unfreeze_budget(self, allocation: AllocationTuple, actor_id: str) -> BudgetInfo:
        """Frozen -> Active."""
        return self._set_status(allocation, BudgetStatus.ACTIVE, actor_id)

    def close_budget(self, allocation: AllocationTuple, actor_id: str) -> BudgetInfo:
        """Terminal.  Closed budgets refuse every movement."""
        return self._set_status(allocation, BudgetStatus.CLOSED, actor_id)

    _STATUS_TRANSITIONS: dict[BudgetStatus, frozenset[BudgetStatus]] = {
        BudgetStatus.PENDING: frozenset({BudgetStatus.ACTIVE, BudgetStatus.CLOSED}),
        BudgetStatus.ACTIVE: frozenset({BudgetStatus.FROZEN, BudgetStatus.CLOSED}),
        BudgetStatus.FROZEN: frozenset({BudgetStatus.ACTIVE, BudgetStatus.CLOSED}),
        BudgetStatus.CLOSED: frozenset(),
    }

    def _set_status(
        self,
        allocation: AllocationTuple,
        target: BudgetStatus,
        actor_id: str,
    ) -> BudgetInfo:
        key = allocation.key
        budget = self.session.execute(
            select(Budget)
            .where(Budget.allocation_key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if budget is None:
            raise UnknownTupleError(key)

        current = BudgetStatus(budget.status)
        if target not in self._STATUS_TRANSITIONS[current]:
            raise BudgetNotActiveError(key, current.value)

        budget.status = target
        budget.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "budget_status_changed",
            extra={
                "allocation_key": key,
                "from_status": current.value,
                "to_status": target.value,
                "actor_id": actor_id,
            },
        )
        return self._budget_to_dto(budget)

    # =========================================================================
    # Ledger movements
    # =========================================================================

    def reserve(
        self,
        allocation: AllocationTuple,
        amount: Decimal,
        actor_id: str,
    ) -> BudgetUsageSnapshot:
        """
        Commit ``amount`` of the approved budget.

        Raises:
            InsufficientBudgetError: If reserved + amount > approved.
        """
        amount = require_positive(amount)
        with LogContext.bind(allocation_key=allocation.key, actor_id=actor_id):
            usage, _ = self._lock_for_movement(allocation)
            before = _snapshot(usage)

            if before.reserved_amount + amount > before.approved_amount:
                logger.warning(
                    "budget_reservation_refused",
                    extra={"amount": amount, "available": before.available},
                )
                raise InsufficientBudgetError(allocation.key, amount, before)

            usage.reserved_amount = before.reserved_amount + amount
            usage.updated_by_id = actor_id
            self.session.flush()

            after = _snapshot(usage)
            logger.info(
                "budget_reserved",
                extra={
                    "amount": amount,
                    "reserved_amount": after.reserved_amount,
                    "available": after.available,
                },
            )
            return after

    def consume(
        self,
        allocation: AllocationTuple,
        amount: Decimal,
        actor_id: str,
    ) -> BudgetUsageSnapshot:
        """
        Record actual spend against the reservation.

        Also adds ``amount`` to the budget's actual expense.

        Raises:
            OverConsumptionError: If consumed + amount > reserved.
        """
        amount = require_positive(amount)
        with LogContext.bind(allocation_key=allocation.key, actor_id=actor_id):
            usage, budget = self._lock_for_movement(allocation)
            before = _snapshot(usage)

            if before.consumed_amount + amount > before.reserved_amount:
                logger.warning(
                    "budget_consumption_refused",
                    extra={
                        "amount": amount,
                        "outstanding_reservation": before.outstanding_reservation,
                    },
                )
                raise OverConsumptionError(allocation.key, amount, before)

            usage.consumed_amount = before.consumed_amount + amount
            usage.updated_by_id = actor_id
            budget.actual_expense = budget.actual_expense + amount
            budget.updated_by_id = actor_id
            self.session.flush()

            after = _snapshot(usage)
            logger.info(
                "budget_consumed",
                extra={"amount": amount, "consumed_amount": after.consumed_amount},
            )
            return after

    def release(
        self,
        allocation: AllocationTuple,
        amount: Decimal,
        actor_id: str,
    ) -> BudgetUsageSnapshot:
        """
        Hand back unspent reservation.

        Raises:
            NegativeReservationError: If reserved - amount < consumed.
        """
        amount = require_positive(amount)
        with LogContext.bind(allocation_key=allocation.key, actor_id=actor_id):
            usage, _ = self._lock_for_movement(allocation)
            before = _snapshot(usage)

            if before.reserved_amount - amount < before.consumed_amount:
                logger.warning(
                    "budget_release_refused",
                    extra={
                        "amount": amount,
                        "outstanding_reservation": before.outstanding_reservation,
                    },
                )
                raise NegativeReservationError(allocation.key, amount, before)

            usage.reserved_amount = before.reserved_amount - amount
            usage.updated_by_id = actor_id
            self.session.flush()

            after = _snapshot(usage)
            logger.info(
                "budget_released",
                extra={"amount": amount, "reserved_amount": after.reserved_amount},
            )
            return after

    # =========================================================================
    # Queries
    # =========================================================================

    def get_usage(self, allocation: AllocationTuple) -> BudgetUsageSnapshot:
        """
        Current balances for a tuple.

        Raises:
            UnknownTupleError: If no budget was activated for the tuple.
        """
        usage = self.session.execute(
            select(BudgetUsage)
            .where(BudgetUsage.allocation_key == allocation.key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if usage is None:
            raise UnknownTupleError(allocation.key)
        return _snapshot(usage)

    def get_budget(self, allocation: AllocationTuple) -> BudgetInfo | None:
        budget = self.session.execute(
            select(Budget).where(Budget.allocation_key == allocation.key)
        ).scalar_one_or_none()
        return self._budget_to_dto(budget) if budget else None

    def get_budget_by_id(self, budget_id: UUID) -> BudgetInfo | None:
        budget = self.session.get(Budget, budget_id)
        return self._budget_to_dto(budget) if budget else None

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock_for_movement(
        self,
        allocation: AllocationTuple,
    ) -> tuple[BudgetUsage, Budget]:
        """Check the period, lock the usage row, check the budget is Active."""
        self._calendar.assert_postable(allocation.fiscal_period_id, lock=True)

        key = allocation.key
        # Expire cached rows so the locked read sees committed balances
        self.session.expire_all()
        usage = self.session.execute(
            select(BudgetUsage)
            .where(BudgetUsage.allocation_key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if usage is None:
            logger.warning("budget_tuple_unknown", extra={"allocation_key": key})
            raise UnknownTupleError(key)

        budget = self.session.get(Budget, usage.budget_id)
        if BudgetStatus(budget.status) != BudgetStatus.ACTIVE:
            raise BudgetNotActiveError(key, BudgetStatus(budget.status).value)

        return usage, budget
