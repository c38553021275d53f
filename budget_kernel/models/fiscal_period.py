"""
Module: budget_kernel.models.fiscal_period
Responsibility: ORM persistence for fiscal years and their periods -- the
    calendar that decides which budget lines still accept movements.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - A fiscal year owns 1..N periods numbered 1, 2, 3, ... without gaps.
    - period_code is unique (FY{year}-P{n}); (fiscal_year_id, period_number)
      is unique.
    - Once CLOSED a period never returns to OPEN or ADJUSTING (enforced by
      FiscalCalendarService and by the before_update listener below).

Failure modes:
    - IntegrityError on duplicate period_code / period_number.
    - PeriodImmutableError if a flush tries to move a CLOSED period back.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from budget_kernel.db.base import ACTOR_ID_LENGTH, TrackedBase, UUIDString
from budget_kernel.domain.dtos import PeriodStatus
from budget_kernel.exceptions import PeriodImmutableError


class FiscalYear(TrackedBase):
    """
    Fiscal year bounds.

    Guarantees:
        - year is unique.
        - start_date and end_date are frozen once a period exists
          (FiscalCalendarService).
    """

    __tablename__ = "fiscal_years"

    __table_args__ = (
        UniqueConstraint("year", name="uq_fiscal_year"),
        CheckConstraint("start_date <= end_date", name="ck_fiscal_year_range"),
    )

    year: Mapped[int] = mapped_column(Integer, nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    periods: Mapped[list[FiscalPeriod]] = relationship(
        back_populates="fiscal_year",
        order_by="FiscalPeriod.period_number",
    )

    def __repr__(self) -> str:
        return f"<FiscalYear {self.year}: {self.start_date}..{self.end_date}>"


class FiscalPeriod(TrackedBase):
    """
    Fiscal period for budget control.

    Contract:
        Ledger movements (reserve / consume / release) and budget activation
        are accepted only while the period is OPEN or ADJUSTING.

    Non-goals:
        - This model does NOT check overlap or contiguity; that is
          FiscalCalendarService's job at creation time.
    """

    __tablename__ = "fiscal_periods"

    __table_args__ = (
        UniqueConstraint("period_code", name="uq_period_code"),
        UniqueConstraint("fiscal_year_id", "period_number", name="uq_period_number"),
        CheckConstraint("start_date <= end_date", name="ck_period_range"),
        CheckConstraint(
            "status IN ('open', 'adjusting', 'closed')",
            name="ck_period_status",
        ),
        Index("idx_period_dates", "start_date", "end_date"),
    )

    fiscal_year_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_years.id"),
        nullable=False,
    )

    period_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # e.g. "FY2025-P03"
    period_code: Mapped[str] = mapped_column(String(20), nullable=False)

    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Inclusive bounds
    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[PeriodStatus] = mapped_column(
        String(20),
        default=PeriodStatus.OPEN,
        nullable=False,
    )

    transaction_closed_upto: Mapped[date | None] = mapped_column(Date, nullable=True)

    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    closed_by_id: Mapped[str | None] = mapped_column(
        String(ACTOR_ID_LENGTH),
        nullable=True,
    )

    fiscal_year: Mapped[FiscalYear] = relationship(back_populates="periods")

    def __repr__(self) -> str:
        return f"<FiscalPeriod {self.period_code}: {self.status}>"

    @property
    def is_closed(self) -> bool:
        return self.status == PeriodStatus.CLOSED

    @property
    def is_postable(self) -> bool:
        return self.status in (PeriodStatus.OPEN, PeriodStatus.ADJUSTING)

    def contains_date(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date


@event.listens_for(FiscalPeriod, "before_update")
def prevent_period_reopen(mapper, connection, target):
    """A closed period is terminal."""
    history = inspect(target).attrs.status.history
    if not history.deleted:
        return
    previous = PeriodStatus(history.deleted[0])
    if previous == PeriodStatus.CLOSED and target.status != PeriodStatus.CLOSED:
        raise PeriodImmutableError(target.period_code, "reopen")
