"""
Module: budget_kernel.models.cost_center
Responsibility: ORM persistence for the cost center tree.
Architecture position: Kernel > Models.

Invariants enforced:
    - code is unique.
    - parent_id forms a forest (no cycles).  The database cannot express
      acyclicity; CostCenterService checks it on create and reparent.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import ACTOR_ID_LENGTH, TrackedBase, UUIDString
from budget_kernel.domain.dtos import CostCenterStatus, CostCenterType


class CostCenter(TrackedBase):
    """A node of the cost center hierarchy."""

    __tablename__ = "cost_centers"

    __table_args__ = (
        UniqueConstraint("code", name="uq_cost_center_code"),
        CheckConstraint(
            "cost_center_type IN ('fixed', 'variable', 'support', 'direct')",
            name="ck_cost_center_type",
        ),
        CheckConstraint(
            "status IN ('approved', 'pending')",
            name="ck_cost_center_status",
        ),
        CheckConstraint(
            "effective_end_date IS NULL OR effective_start_date <= effective_end_date",
            name="ck_cost_center_effective_range",
        ),
        Index("idx_cost_center_parent", "parent_id"),
        Index("idx_cost_center_department", "department_id"),
    )

    parent_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("cost_centers.id"),
        nullable=True,
    )

    department_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    code: Mapped[str] = mapped_column(String(20), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    cost_center_type: Mapped[CostCenterType] = mapped_column(
        String(20),
        nullable=False,
    )

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[CostCenterStatus] = mapped_column(
        String(20),
        default=CostCenterStatus.PENDING,
        nullable=False,
    )

    effective_start_date: Mapped[date] = mapped_column(Date, nullable=False)

    effective_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    manager_id: Mapped[str | None] = mapped_column(String(ACTOR_ID_LENGTH), nullable=True)

    budget_owner_id: Mapped[str | None] = mapped_column(
        String(ACTOR_ID_LENGTH),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<CostCenter {self.code}>"

    def is_effective_on(self, on_date: date) -> bool:
        if on_date < self.effective_start_date:
            return False
        return self.effective_end_date is None or on_date <= self.effective_end_date
