"""Monthly balance snapshots.

A month's closing balance is always ``opening + income - expenses``. The
opening balance is the previous month's closing balance unless the user pinned
it with an override. Changing a closing balance cascades forward, one unit of
work per month, until a month with an override or a month with no row.
"""

import logging
from collections import deque
from typing import Optional

from sqlalchemy.orm import Session

from errors import LedgerError
from models import MonthlyBalance
from periods import iter_months, month_start, next_month, previous_month
from store import LedgerStore


logger = logging.getLogger(__name__)


class BalanceAggregator:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def recompute(self, user_id: int, year: int, month: int) -> MonthlyBalance:
        with self.store.unit_of_work() as session:
            balance, changed = self.recompute_in(session, user_id, year, month)
        if changed:
            self.cascade_quietly(user_id, year, month)
        return balance

    def set_override(
        self, user_id: int, year: int, month: int, value_cents: int
    ) -> MonthlyBalance:
        with self.store.unit_of_work() as session:
            row = self.store.lock_monthly_balance(session, user_id, year, month)
            if row is None:
                row = _blank_balance(user_id, year, month)
            row.opening_balance_is_override = True
            row.opening_balance_cents = value_cents
            balance, changed = self._apply_month(session, user_id, year, month, row)
        logger.info(
            f"set_override: user_id={user_id} month={year}-{month:02d}"
            f" opening_cents={value_cents}"
        )
        if changed:
            self.cascade_quietly(user_id, year, month)
        return balance

    def recompute_in(
        self, session: Session, user_id: int, year: int, month: int
    ) -> tuple[MonthlyBalance, bool]:
        """Recompute one month inside the caller's unit of work.

        Returns the persisted row and whether its closing balance changed, so
        the caller can cascade after its own commit.
        """
        row = self.store.lock_monthly_balance(session, user_id, year, month)
        if row is None or not row.opening_balance_is_override:
            self._backfill(session, user_id, year, month)
        return self._apply_month(session, user_id, year, month, row)

    def cascade(self, user_id: int, year: int, month: int) -> int:
        pending: deque[tuple[int, int]] = deque([next_month(year, month)])
        updated = 0
        while pending:
            y, m = pending.popleft()
            with self.store.unit_of_work() as session:
                row = self.store.lock_monthly_balance(session, user_id, y, m)
                if row is None or row.opening_balance_is_override:
                    break
                _, changed = self._apply_month(session, user_id, y, m, row)
            updated += 1
            if changed:
                pending.append(next_month(y, m))
        if updated:
            logger.debug(
                f"cascade: user_id={user_id} from={year}-{month:02d} months={updated}"
            )
        return updated

    def cascade_quietly(self, user_id: int, year: int, month: int) -> None:
        # The triggering month is already committed; a later recompute converges.
        try:
            self.cascade(user_id, year, month)
        except LedgerError as exc:
            logger.warning(
                f"cascade: deferred user_id={user_id} from={year}-{month:02d}"
                f" error={exc}",
                exc_info=True,
            )

    def _backfill(self, session: Session, user_id: int, year: int, month: int) -> None:
        prev_year, prev_month = previous_month(year, month)
        if self.store.get_monthly_balance(session, user_id, prev_year, prev_month):
            return

        start: Optional[tuple[int, int]] = None
        latest = self.store.latest_balance_before(session, user_id, year, month)
        if latest is not None:
            start = next_month(latest.year, latest.month)
        else:
            earliest = self.store.earliest_transaction_before(
                session, user_id, month_start(year, month)
            )
            if earliest is not None:
                start = (earliest.year, earliest.month)
        if start is None:
            return

        for y, m in iter_months(start, (year, month)):
            self._apply_month(session, user_id, y, m)

    def _apply_month(
        self,
        session: Session,
        user_id: int,
        year: int,
        month: int,
        row: Optional[MonthlyBalance] = None,
    ) -> tuple[MonthlyBalance, bool]:
        if row is None:
            row = self.store.lock_monthly_balance(session, user_id, year, month)
        previous_closing = None
        if row is None:
            row = _blank_balance(user_id, year, month)
        elif row.id is not None:
            previous_closing = row.closing_balance_cents

        income, expenses = self.store.month_totals(session, user_id, year, month)
        if not row.opening_balance_is_override:
            prev = self.store.get_monthly_balance(
                session, user_id, *previous_month(year, month)
            )
            row.opening_balance_cents = prev.closing_balance_cents if prev else 0
        row.monthly_income_cents = income
        row.monthly_expenses_cents = expenses
        row.closing_balance_cents = row.opening_balance_cents + income - expenses

        row = self.store.upsert_monthly_balance(session, row)
        logger.debug(
            f"recompute: user_id={user_id} month={year}-{month:02d}"
            f" opening={row.opening_balance_cents} income={income}"
            f" expenses={expenses} closing={row.closing_balance_cents}"
        )
        return row, previous_closing != row.closing_balance_cents


def _blank_balance(user_id: int, year: int, month: int) -> MonthlyBalance:
    return MonthlyBalance(
        user_id=user_id,
        year=year,
        month=month,
        opening_balance_cents=0,
        monthly_income_cents=0,
        monthly_expenses_cents=0,
        closing_balance_cents=0,
        opening_balance_is_override=False,
    )
