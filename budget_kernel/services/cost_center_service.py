"""
CostCenterService -- the cost center tree.

Responsibility:
    Creates and re-parents cost centers without ever forming a cycle,
    resolves a node's ancestor path, and validates that a (department,
    cost center, sub cost center) triple nests correctly before the
    budget ledger accepts it.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by BudgetLedgerService.activate_budget and RequestBudgetService.

Invariants enforced:
    - Acyclic parent chain.  Every walk up the tree is iterative and
      bounded by ``max_depth``; exceeding it or revisiting a node raises
      CycleError, so a corrupted table can never loop forever.
    - A sub cost center must be a strict descendant of its cost center.
    - A cost center assigned to a department only funds that department.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import select

from budget_kernel.domain.clock import Clock
from budget_kernel.domain.dtos import CostCenterInfo, CostCenterStatus, CostCenterType
from budget_kernel.exceptions import (
    CostCenterNotFoundError,
    CycleError,
    DuplicateCodeError,
    HierarchyMismatchError,
    InvalidDateRangeError,
)
from budget_kernel.logging_config import get_logger
from budget_kernel.models.cost_center import CostCenter
from budget_kernel.services.base import BaseService

logger = get_logger("services.cost_center")

DEFAULT_MAX_DEPTH = 32


class CostCenterService(BaseService[CostCenter]):
    """Maintains and queries the cost center hierarchy."""

    def __init__(
        self,
        session,
        clock: Clock | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ):
        super().__init__(session, clock)
        if max_depth < 1:
            raise ValueError(f"max_depth must be positive, got {max_depth}")
        self._max_depth = max_depth

    def _to_dto(self, cc: CostCenter) -> CostCenterInfo:
        return CostCenterInfo(
            id=cc.id,
            code=cc.code,
            name=cc.name,
            cost_center_type=CostCenterType(cc.cost_center_type),
            status=CostCenterStatus(cc.status),
            effective_start_date=cc.effective_start_date,
            parent_id=cc.parent_id,
            department_id=cc.department_id,
            effective_end_date=cc.effective_end_date,
            manager_id=cc.manager_id,
            budget_owner_id=cc.budget_owner_id,
            description=cc.description,
        )

    # =========================================================================
    # Mutations
    # =========================================================================

    def create(
        self,
        code: str,
        name: str,
        cost_center_type: CostCenterType,
        effective_start_date: date,
        actor_id: str,
        parent_id: UUID | None = None,
        department_id: str | None = None,
        effective_end_date: date | None = None,
        manager_id: str | None = None,
        budget_owner_id: str | None = None,
        description: str | None = None,
        status: CostCenterStatus = CostCenterStatus.PENDING,
    ) -> CostCenterInfo:
        """
        Create a cost center, optionally under a parent.

        Raises:
            DuplicateCodeError: If ``code`` is already used.
            CostCenterNotFoundError: If ``parent_id`` does not exist.
            CycleError: If the parent's own chain is corrupt or too deep.
            InvalidDateRangeError: If the effective range is inverted.
        """
        if effective_end_date is not None and effective_start_date > effective_end_date:
            raise InvalidDateRangeError(effective_start_date, effective_end_date)

        existing = self.session.execute(
            select(CostCenter.id).where(CostCenter.code == code)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateCodeError(code)

        if parent_id is not None:
            if self.session.get(CostCenter, parent_id) is None:
                raise CostCenterNotFoundError(str(parent_id))
            # The new node sits one level below the parent's path.
            parent_path = self._walk_up(parent_id)
            if len(parent_path) + 1 > self._max_depth:
                raise CycleError(
                    code,
                    [str(p) for p in parent_path],
                    f"depth exceeds {self._max_depth}",
                )

        cc = CostCenter(
            code=code,
            name=name,
            cost_center_type=CostCenterType(cost_center_type),
            effective_start_date=effective_start_date,
            effective_end_date=effective_end_date,
            parent_id=parent_id,
            department_id=department_id,
            manager_id=manager_id,
            budget_owner_id=budget_owner_id,
            description=description,
            status=CostCenterStatus(status),
            created_by_id=actor_id,
        )
        self.session.add(cc)
        self.session.flush()

        logger.info(
            "cost_center_created",
            extra={
                "cost_center_code": code,
                "parent_id": str(parent_id) if parent_id else None,
                "department_id": department_id,
                "actor_id": actor_id,
            },
        )
        return self._to_dto(cc)

    def reparent(
        self,
        cost_center_id: UUID,
        new_parent_id: UUID | None,
        actor_id: str,
    ) -> CostCenterInfo:
        """
        Move a cost center (and its subtree) under another parent.

        Raises:
            CostCenterNotFoundError: If either node does not exist.
            CycleError: If the new parent is the node itself or one of its
                descendants, or the resulting depth exceeds the guard.
        """
        cc = self._get_for_update(cost_center_id)
        if cc is None:
            raise CostCenterNotFoundError(str(cost_center_id))

        if new_parent_id is not None:
            if self.session.get(CostCenter, new_parent_id) is None:
                raise CostCenterNotFoundError(str(new_parent_id))
            parent_path = self._walk_up(new_parent_id)
            if cost_center_id in parent_path:
                raise CycleError(
                    str(cost_center_id),
                    [str(p) for p in parent_path],
                    "new parent is a descendant of the node",
                )
            if len(parent_path) + 1 > self._max_depth:
                raise CycleError(
                    str(cost_center_id),
                    [str(p) for p in parent_path],
                    f"depth exceeds {self._max_depth}",
                )

        old_parent_id = cc.parent_id
        cc.parent_id = new_parent_id
        cc.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "cost_center_reparented",
            extra={
                "cost_center_code": cc.code,
                "old_parent_id": str(old_parent_id) if old_parent_id else None,
                "new_parent_id": str(new_parent_id) if new_parent_id else None,
                "actor_id": actor_id,
            },
        )
        return self._to_dto(cc)

    def approve(self, cost_center_id: UUID, actor_id: str) -> CostCenterInfo:
        """Pending -> Approved.  Approving twice is a no-op."""
        cc = self._get_for_update(cost_center_id)
        if cc is None:
            raise CostCenterNotFoundError(str(cost_center_id))
        if cc.status != CostCenterStatus.APPROVED:
            cc.status = CostCenterStatus.APPROVED
            cc.updated_by_id = actor_id
            self.session.flush()
            logger.info(
                "cost_center_approved",
                extra={"cost_center_code": cc.code, "actor_id": actor_id},
            )
        return self._to_dto(cc)

    def end_date(
        self,
        cost_center_id: UUID,
        effective_end_date: date,
        actor_id: str,
    ) -> CostCenterInfo:
        """Stop a cost center from funding anything after ``effective_end_date``."""
        cc = self._get_for_update(cost_center_id)
        if cc is None:
            raise CostCenterNotFoundError(str(cost_center_id))
        if effective_end_date < cc.effective_start_date:
            raise InvalidDateRangeError(cc.effective_start_date, effective_end_date)
        cc.effective_end_date = effective_end_date
        cc.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "cost_center_end_dated",
            extra={
                "cost_center_code": cc.code,
                "effective_end_date": str(effective_end_date),
            },
        )
        return self._to_dto(cc)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, cost_center_id: UUID) -> CostCenterInfo | None:
        cc = self.session.get(CostCenter, cost_center_id)
        return self._to_dto(cc) if cc else None

    def get_by_code(self, code: str) -> CostCenterInfo | None:
        cc = self.session.execute(
            select(CostCenter).where(CostCenter.code == code)
        ).scalar_one_or_none()
        return self._to_dto(cc) if cc else None

    def children(self, cost_center_id: UUID) -> list[CostCenterInfo]:
        result = self.session.execute(
            select(CostCenter)
            .where(CostCenter.parent_id == cost_center_id)
            .order_by(CostCenter.code)
        )
        return [self._to_dto(cc) for cc in result.scalars().all()]

    def resolve_path(self, cost_center_id: UUID) -> list[CostCenterInfo]:
        """
        Ancestors from the root down to the node itself.

        Raises:
            CostCenterNotFoundError: If the node does not exist.
            CycleError: If the chain revisits a node or exceeds max_depth.
        """
        path_ids = self._walk_up(cost_center_id)
        nodes = [self.session.get(CostCenter, node_id) for node_id in reversed(path_ids)]
        return [self._to_dto(cc) for cc in nodes]

    def validate_allocation(
        self,
        department_id: str,
        cost_center_id: UUID,
        sub_cost_center_id: UUID | None = None,
    ) -> None:
        """
        Check that the triple nests: the cost center belongs to the
        department (when it is assigned to one) and the sub cost center is
        a strict descendant of the cost center.

        Raises:
            CostCenterNotFoundError: If a node does not exist.
            HierarchyMismatchError: If the triple does not nest.
        """
        cc = self.session.get(CostCenter, cost_center_id)
        if cc is None:
            raise CostCenterNotFoundError(str(cost_center_id))

        if cc.department_id is not None and cc.department_id != department_id:
            raise HierarchyMismatchError(
                str(cost_center_id),
                str(sub_cost_center_id) if sub_cost_center_id else None,
                department_id,
                f"cost center belongs to department {cc.department_id}",
            )

        if sub_cost_center_id is None:
            return

        if sub_cost_center_id == cost_center_id:
            raise HierarchyMismatchError(
                str(cost_center_id),
                str(sub_cost_center_id),
                department_id,
                "sub cost center cannot be the cost center itself",
            )

        if self.session.get(CostCenter, sub_cost_center_id) is None:
            raise CostCenterNotFoundError(str(sub_cost_center_id))

        ancestors = self._walk_up(sub_cost_center_id)[1:]
        if cost_center_id not in ancestors:
            raise HierarchyMismatchError(
                str(cost_center_id),
                str(sub_cost_center_id),
                department_id,
                "sub cost center is not a descendant of the cost center",
            )

    def is_active(self, cost_center_id: UUID, on_date: date) -> bool:
        """Approved and effective on ``on_date``."""
        cc = self.session.get(CostCenter, cost_center_id)
        if cc is None:
            raise CostCenterNotFoundError(str(cost_center_id))
        return cc.status == CostCenterStatus.APPROVED and cc.is_effective_on(on_date)

    # =========================================================================
    # Internals
    # =========================================================================

    def _walk_up(self, cost_center_id: UUID) -> list[UUID]:
        """Node id first, then each ancestor up to the root."""
        path: list[UUID] = []
        seen: set[UUID] = set()
        current: UUID | None = cost_center_id

        while current is not None:
            if current in seen:
                raise CycleError(
                    str(cost_center_id),
                    [str(p) for p in path + [current]],
                    "parent chain revisits a node",
                )
            if len(path) >= self._max_depth:
                raise CycleError(
                    str(cost_center_id),
                    [str(p) for p in path],
                    f"depth exceeds {self._max_depth}",
                )
            seen.add(current)
            path.append(current)
            parent_id = self.session.execute(
                select(CostCenter.parent_id).where(CostCenter.id == current)
            ).one_or_none()
            if parent_id is None:
                if current == cost_center_id:
                    raise CostCenterNotFoundError(str(cost_center_id))
                raise CycleError(
                    str(cost_center_id),
                    [str(p) for p in path],
                    f"dangling parent reference {current}",
                )
            current = parent_id[0]

        return path

    def _get_for_update(self, cost_center_id: UUID) -> CostCenter | None:
        return self.session.execute(
            select(CostCenter)
            .where(CostCenter.id == cost_center_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
