"""
FiscalCalendarService -- fiscal years, periods and posting-date control.

Responsibility:
    Creates fiscal years and their contiguous, numbered periods, closes
    periods irreversibly, and answers "may this period still take ledger
    movements?" for the budget ledger.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by BudgetLedgerService before every ledger mutation and by
    administrative callers to maintain the calendar.

Invariants enforced:
    - Periods of a fiscal year are numbered 1..N without gaps, do not
      overlap, sit inside the year's bounds, and are contiguous (each
      starts the day after its predecessor ends).
    - A fiscal year's bounds are frozen once it has periods.
    - CLOSED is terminal.  ``reopen_period`` always refuses.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - InvalidDateRangeError, FiscalYearOverlapError, DuplicateFiscalYearError
    - PeriodOverlapError, PeriodSequenceError, PeriodGapError,
      PeriodOutsideYearError
    - PeriodAlreadyClosedError, PeriodImmutableError
    - PeriodClosedError, PeriodNotFoundError, FiscalYearNotFoundError

Audit relevance:
    Year creation, period creation and close are logged with period_code,
    actor_id and dates.  Rejected postings log at WARNING.
"""

from datetime import date, timedelta
from uuid import UUID

from sqlalchemy import select

from budget_kernel.domain.dtos import FiscalPeriodInfo, FiscalYearInfo, PeriodStatus
from budget_kernel.exceptions import (
    DuplicateFiscalYearError,
    FiscalYearImmutableError,
    FiscalYearNotFoundError,
    FiscalYearOverlapError,
    InvalidDateRangeError,
    PeriodAlreadyClosedError,
    PeriodClosedError,
    PeriodGapError,
    PeriodImmutableError,
    PeriodNotFoundError,
    PeriodOutsideYearError,
    PeriodOverlapError,
    PeriodSequenceError,
)
from budget_kernel.logging_config import get_logger
from budget_kernel.models.fiscal_period import FiscalPeriod, FiscalYear
from budget_kernel.services.base import BaseService

logger = get_logger("services.fiscal_calendar")


def period_code_for(year: int, period_number: int) -> str:
    return f"FY{year}-P{period_number:02d}"


class FiscalCalendarService(BaseService[FiscalPeriod]):
    """
    Service for the fiscal calendar.

    Contract:
        Returns frozen ``FiscalYearInfo`` / ``FiscalPeriodInfo`` DTOs.
        Mutations flush within the caller's transaction.

    Guarantees:
        - Concurrent period creation within a year is serialized by a
          row lock on the fiscal year.
        - Concurrent close attempts are serialized by a row lock on the
          period; the loser sees CLOSED and raises PeriodAlreadyClosedError.
    """

    # =========================================================================
    # DTO conversion
    # =========================================================================

    def _year_to_dto(self, year: FiscalYear) -> FiscalYearInfo:
        return FiscalYearInfo(
            id=year.id,
            year=year.year,
            name=year.name,
            start_date=year.start_date,
            end_date=year.end_date,
        )

    def _to_dto(self, period: FiscalPeriod) -> FiscalPeriodInfo:
        return FiscalPeriodInfo(
            id=period.id,
            fiscal_year=period.fiscal_year.year,
            period_number=period.period_number,
            period_code=period.period_code,
            name=period.name,
            start_date=period.start_date,
            end_date=period.end_date,
            status=PeriodStatus(period.status),
            transaction_closed_upto=period.transaction_closed_upto,
            closed_at=period.closed_at,
            closed_by_id=period.closed_by_id,
        )

    # =========================================================================
    # Fiscal years
    # =========================================================================

    def create_fiscal_year(
        self,
        year: int,
        start_date: date,
        end_date: date,
        actor_id: str,
        name: str | None = None,
    ) -> FiscalYearInfo:
        """
        Create a fiscal year.

        Raises:
            InvalidDateRangeError: If start_date > end_date.
            DuplicateFiscalYearError: If the year already exists.
            FiscalYearOverlapError: If the range intersects another year.
        """
        if start_date > end_date:
            raise InvalidDateRangeError(start_date, end_date)

        if self._get_year_orm(year) is not None:
            raise DuplicateFiscalYearError(year)

        self._validate_year_no_overlap(year, start_date, end_date)

        fiscal_year = FiscalYear(
            year=year,
            name=name or f"FY{year}",
            start_date=start_date,
            end_date=end_date,
            created_by_id=actor_id,
        )
        self.session.add(fiscal_year)
        self.session.flush()

        logger.info(
            "fiscal_year_created",
            extra={
                "year": year,
                "start_date": str(start_date),
                "end_date": str(end_date),
                "actor_id": actor_id,
            },
        )
        return self._year_to_dto(fiscal_year)

    def update_fiscal_year(
        self,
        year: int,
        start_date: date,
        end_date: date,
        actor_id: str,
    ) -> FiscalYearInfo:
        """
        Move a fiscal year's bounds.  Only allowed before any period exists.

        Raises:
            FiscalYearNotFoundError: If the year does not exist.
            FiscalYearImmutableError: If the year already has periods.
        """
        fiscal_year = self._get_year_for_update(year)
        if fiscal_year is None:
            raise FiscalYearNotFoundError(year)
        if fiscal_year.periods:
            raise FiscalYearImmutableError(year)
        if start_date > end_date:
            raise InvalidDateRangeError(start_date, end_date)

        self._validate_year_no_overlap(year, start_date, end_date)

        fiscal_year.start_date = start_date
        fiscal_year.end_date = end_date
        fiscal_year.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "fiscal_year_updated",
            extra={"year": year, "start_date": str(start_date), "end_date": str(end_date)},
        )
        return self._year_to_dto(fiscal_year)

    def get_fiscal_year(self, year: int) -> FiscalYearInfo | None:
        fiscal_year = self._get_year_orm(year)
        return self._year_to_dto(fiscal_year) if fiscal_year else None

    def _validate_year_no_overlap(self, year: int, start_date: date, end_date: date) -> None:
        overlapping = self.session.execute(
            select(FiscalYear).where(
                FiscalYear.year != year,
                FiscalYear.start_date <= end_date,
                FiscalYear.end_date >= start_date,
            )
        ).scalars().first()
        if overlapping is not None:
            raise FiscalYearOverlapError(year, overlapping.year)

    def _get_year_orm(self, year: int) -> FiscalYear | None:
        return self.session.execute(
            select(FiscalYear).where(FiscalYear.year == year)
        ).scalar_one_or_none()

    def _get_year_for_update(self, year: int) -> FiscalYear | None:
        return self.session.execute(
            select(FiscalYear)
            .where(FiscalYear.year == year)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    # =========================================================================
    # Periods
    # =========================================================================

    def create_period(
        self,
        year: int,
        period_number: int,
        start_date: date,
        end_date: date,
        actor_id: str,
        name: str | None = None,
    ) -> FiscalPeriodInfo:
        """
        Append the next period to a fiscal year.

        Args:
            year: Fiscal year the period belongs to.
            period_number: Must be one more than the highest existing number.
            start_date: First day of the period (inclusive).
            end_date: Last day of the period (inclusive).
            actor_id: Who is creating the period.
            name: Human-readable name.  Defaults to the period code.

        Returns:
            Created FiscalPeriodInfo DTO.

        Raises:
            InvalidDateRangeError: If start_date > end_date.
            FiscalYearNotFoundError: If the year does not exist.
            PeriodOutsideYearError: If the range leaves the year's bounds.
            PeriodOverlapError: If the range intersects another period.
            PeriodSequenceError: If period_number is not max + 1.
            PeriodGapError: If the period does not start the day after
                the previous one ends (or on the year start, for period 1).
        """
        if start_date > end_date:
            raise InvalidDateRangeError(start_date, end_date)

        fiscal_year = self._get_year_for_update(year)
        if fiscal_year is None:
            raise FiscalYearNotFoundError(year)

        period_code = period_code_for(year, period_number)

        if start_date < fiscal_year.start_date or end_date > fiscal_year.end_date:
            raise PeriodOutsideYearError(period_code, year)

        existing = list(
            self.session.execute(
                select(FiscalPeriod)
                .where(FiscalPeriod.fiscal_year_id == fiscal_year.id)
                .order_by(FiscalPeriod.period_number)
            ).scalars()
        )

        for other in existing:
            if other.start_date <= end_date and other.end_date >= start_date:
                raise PeriodOverlapError(
                    new_period_code=period_code,
                    existing_period_code=other.period_code,
                    overlap_start=str(max(start_date, other.start_date)),
                    overlap_end=str(min(end_date, other.end_date)),
                )

        expected_number = existing[-1].period_number + 1 if existing else 1
        if period_number != expected_number:
            raise PeriodSequenceError(year, period_number, expected_number)

        expected_start = (
            existing[-1].end_date + timedelta(days=1)
            if existing
            else fiscal_year.start_date
        )
        if start_date != expected_start:
            raise PeriodGapError(period_code, expected_start, start_date)

        period = FiscalPeriod(
            fiscal_year=fiscal_year,
            period_number=period_number,
            period_code=period_code,
            name=name or period_code,
            start_date=start_date,
            end_date=end_date,
            status=PeriodStatus.OPEN,
            created_by_id=actor_id,
        )
        self.session.add(period)
        self.session.flush()

        logger.info(
            "period_created",
            extra={
                "period_code": period_code,
                "start_date": str(start_date),
                "end_date": str(end_date),
                "actor_id": actor_id,
            },
        )
        return self._to_dto(period)

    def close_period(
        self,
        period_id: UUID,
        as_of_date: date,
        actor_id: str,
    ) -> FiscalPeriodInfo:
        """
        Close a fiscal period.  Irreversible.

        Uses SELECT FOR UPDATE to serialize concurrent close attempts; the
        second closer sees the committed CLOSED status.

        Postconditions:
            - status is CLOSED, transaction_closed_upto is as_of_date.
            - ``assert_postable`` raises PeriodClosedError from now on.

        Raises:
            PeriodNotFoundError: If the period does not exist.
            PeriodAlreadyClosedError: If the period is already closed.
        """
        period = self._get_period_for_update(period_id)
        if period is None:
            raise PeriodNotFoundError(str(period_id))

        if period.is_closed:
            raise PeriodAlreadyClosedError(period.period_code)

        period.status = PeriodStatus.CLOSED
        period.transaction_closed_upto = as_of_date
        period.closed_at = self._clock.now()
        period.closed_by_id = actor_id
        period.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "period_closed",
            extra={
                "period_code": period.period_code,
                "as_of_date": str(as_of_date),
                "actor_id": actor_id,
            },
        )
        return self._to_dto(period)

    def begin_adjusting(self, period_id: UUID, actor_id: str) -> FiscalPeriodInfo:
        """
        Move an OPEN period into ADJUSTING (year-end adjustments).

        ADJUSTING periods still accept ledger movements.

        Raises:
            PeriodNotFoundError: If the period does not exist.
            PeriodAlreadyClosedError: If the period is closed.
        """
        period = self._get_period_for_update(period_id)
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        if period.is_closed:
            raise PeriodAlreadyClosedError(period.period_code)

        if period.status != PeriodStatus.ADJUSTING:
            period.status = PeriodStatus.ADJUSTING
            period.updated_by_id = actor_id
            self.session.flush()
            logger.info(
                "period_adjusting_begun",
                extra={"period_code": period.period_code, "actor_id": actor_id},
            )
        return self._to_dto(period)

    def reopen_period(self, period_id: UUID, actor_id: str) -> None:
        """
        Attempt to reopen a closed period.  Always fails for closed periods;
        a no-op for periods that are still open.

        Raises:
            PeriodNotFoundError: If the period does not exist.
            PeriodImmutableError: If the period is closed.
        """
        period = self._get_period_orm(period_id)
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        if period.is_closed:
            logger.warning(
                "period_reopen_refused",
                extra={"period_code": period.period_code, "actor_id": actor_id},
            )
            raise PeriodImmutableError(period.period_code, "reopen")

    def assert_postable(self, period_id: UUID, *, lock: bool = False) -> FiscalPeriodInfo:
        """
        Check that a period accepts ledger movements.

        Args:
            period_id: Period to check.
            lock: Take a shared row lock so a concurrent close waits for
                the caller's transaction.

        Returns:
            The period DTO when OPEN or ADJUSTING.

        Raises:
            PeriodNotFoundError: If the period does not exist.
            PeriodClosedError: If the period is closed.
        """
        stmt = select(FiscalPeriod).where(FiscalPeriod.id == period_id)
        if lock:
            stmt = stmt.with_for_update(read=True).execution_options(
                populate_existing=True
            )
        period = self.session.execute(stmt).scalar_one_or_none()

        if period is None:
            raise PeriodNotFoundError(str(period_id))

        if not period.is_postable:
            logger.warning(
                "period_closed_violation",
                extra={"period_code": period.period_code},
            )
            raise PeriodClosedError(period.period_code)

        return self._to_dto(period)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_period(self, period_id: UUID) -> FiscalPeriodInfo | None:
        period = self._get_period_orm(period_id)
        return self._to_dto(period) if period else None

    def get_period_by_code(self, period_code: str) -> FiscalPeriodInfo | None:
        period = self.session.execute(
            select(FiscalPeriod).where(FiscalPeriod.period_code == period_code)
        ).scalar_one_or_none()
        return self._to_dto(period) if period else None

    def get_period_for_date(self, effective_date: date) -> FiscalPeriodInfo | None:
        """Get the period whose range contains ``effective_date``."""
        period = self.session.execute(
            select(FiscalPeriod).where(
                FiscalPeriod.start_date <= effective_date,
                FiscalPeriod.end_date >= effective_date,
            )
        ).scalar_one_or_none()
        return self._to_dto(period) if period else None

    def get_current_period(self) -> FiscalPeriodInfo | None:
        """Get the period containing today's date (from the injected clock)."""
        return self.get_period_for_date(self._clock.today())

    def list_periods(self, year: int) -> list[FiscalPeriodInfo]:
        """All periods of a fiscal year, by period number."""
        result = self.session.execute(
            select(FiscalPeriod)
            .join(FiscalYear, FiscalPeriod.fiscal_year_id == FiscalYear.id)
            .where(FiscalYear.year == year)
            .order_by(FiscalPeriod.period_number)
        )
        return [self._to_dto(p) for p in result.scalars().all()]

    def _get_period_orm(self, period_id: UUID) -> FiscalPeriod | None:
        return self.session.get(FiscalPeriod, period_id)

    def _get_period_for_update(self, period_id: UUID) -> FiscalPeriod | None:
        return self.session.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.id == period_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
