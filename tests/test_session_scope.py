"""session_scope commits on success and rolls back on error."""

from datetime import date

import pytest

from budget_kernel.db.engine import get_session_factory, session_scope
from budget_kernel.exceptions import DuplicateFiscalYearError
from budget_kernel.services.fiscal_calendar import FiscalCalendarService
from tests.conftest import TEST_ACTOR_ID


def _fiscal_year_exists(year: int) -> bool:
    with get_session_factory()() as check:
        return FiscalCalendarService(check).get_fiscal_year(year) is not None


class TestSessionScope:

    def test_commits_on_normal_exit(self, pg_session_factory):
        with session_scope() as session:
            FiscalCalendarService(session).create_fiscal_year(
                2031, date(2031, 1, 1), date(2031, 12, 31), TEST_ACTOR_ID
            )
        assert _fiscal_year_exists(2031)

    def test_rolls_back_and_reraises(self, pg_session_factory, captured_logs):
        with pytest.raises(RuntimeError, match="boom"):
            with session_scope() as session:
                FiscalCalendarService(session).create_fiscal_year(
                    2032, date(2032, 1, 1), date(2032, 12, 31), TEST_ACTOR_ID
                )
                session.flush()
                raise RuntimeError("boom")

        assert not _fiscal_year_exists(2032)
        rolled_back = [r for r in captured_logs() if r["message"] == "transaction_rolled_back"]
        assert rolled_back[0]["exc_type"] == "RuntimeError"

    def test_kernel_error_inside_scope_leaves_nothing(self, pg_session_factory):
        with session_scope() as session:
            FiscalCalendarService(session).create_fiscal_year(
                2033, date(2033, 1, 1), date(2033, 12, 31), TEST_ACTOR_ID
            )

        with pytest.raises(DuplicateFiscalYearError):
            with session_scope() as session:
                FiscalCalendarService(session).create_fiscal_year(
                    2033, date(2033, 1, 1), date(2033, 12, 31), TEST_ACTOR_ID
                )
        assert _fiscal_year_exists(2033)
