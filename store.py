"""Data access and locking helpers shared by the aggregator and the materializer.

Every write path runs inside :meth:`LedgerStore.unit_of_work`, which commits on
success, rolls back on any exception and translates SQLAlchemy failures into
the ledger error taxonomy so callers never handle driver exceptions.
"""

import logging
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database import session_scope
from errors import ConflictError, NotFoundError, StorageError
from models import MonthlyBalance, RecurringRule, Transaction, TransactionType, User
from periods import month_end, month_start


logger = logging.getLogger(__name__)

_LOCK_MARKERS = (
    "database is locked",
    "database table is locked",
    "lock timeout",
    "could not obtain lock",
    "lock not available",
    "deadlock detected",
)


def _is_lock_contention(exc: OperationalError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _LOCK_MARKERS)


class LedgerStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        try:
            with session_scope(self.session_factory) as session:
                yield session
        except OperationalError as exc:
            if _is_lock_contention(exc):
                logger.warning(f"unit_of_work: lock contention: {exc.orig}")
                raise ConflictError("Timed out waiting for a ledger lock") from exc
            logger.error(f"unit_of_work: storage failure: {exc.orig}")
            raise StorageError("Ledger storage is unavailable") from exc
        except IntegrityError as exc:
            logger.warning(f"unit_of_work: concurrent write rejected: {exc.orig}")
            raise ConflictError("A concurrent update touched the same record") from exc
        except SQLAlchemyError as exc:
            logger.error(f"unit_of_work: storage failure: {exc}")
            raise StorageError("Ledger storage failed") from exc

    # users

    def get_user(self, session: Session, user_id: int) -> User:
        user = session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    # transactions

    def get_transactions(
        self, session: Session, user_id: int, year: int, month: int
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.date.between(
                    month_start(year, month), month_end(year, month)
                ),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(session.scalars(stmt).all())

    def month_totals(
        self, session: Session, user_id: int, year: int, month: int
    ) -> tuple[int, int]:
        stmt = select(
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.income,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("income"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            Transaction.type == TransactionType.expense,
                            Transaction.amount_cents,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("expenses"),
        ).where(
            Transaction.user_id == user_id,
            Transaction.date.between(month_start(year, month), month_end(year, month)),
        )
        row = session.execute(stmt).one()
        return int(row.income), int(row.expenses)

    def earliest_transaction_before(
        self, session: Session, user_id: int, before: date
    ) -> Optional[date]:
        return session.scalar(
            select(func.min(Transaction.date)).where(
                Transaction.user_id == user_id, Transaction.date < before
            )
        )

    def create_transaction(self, session: Session, txn: Transaction) -> Transaction:
        session.add(txn)
        session.flush()
        return txn

    def occurrence_exists(
        self, session: Session, rule: RecurringRule, occurrence_date: date
    ) -> bool:
        existing = session.execute(
            select(Transaction.id)
            .where(
                Transaction.user_id == rule.user_id,
                Transaction.origin_rule_id == rule.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        ).scalar_one_or_none()
        return existing is not None

    # monthly balances

    def get_monthly_balance(
        self,
        session: Session,
        user_id: int,
        year: int,
        month: int,
        *,
        for_update: bool = False,
    ) -> Optional[MonthlyBalance]:
        stmt = select(MonthlyBalance).where(
            MonthlyBalance.user_id == user_id,
            MonthlyBalance.year == year,
            MonthlyBalance.month == month,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalar(stmt)

    def lock_monthly_balance(
        self, session: Session, user_id: int, year: int, month: int
    ) -> Optional[MonthlyBalance]:
        return self.get_monthly_balance(session, user_id, year, month, for_update=True)

    def latest_balance_before(
        self, session: Session, user_id: int, year: int, month: int
    ) -> Optional[MonthlyBalance]:
        stmt = (
            select(MonthlyBalance)
            .where(
                MonthlyBalance.user_id == user_id,
                or_(
                    MonthlyBalance.year < year,
                    and_(MonthlyBalance.year == year, MonthlyBalance.month < month),
                ),
            )
            .order_by(MonthlyBalance.year.desc(), MonthlyBalance.month.desc())
            .limit(1)
        )
        return session.scalar(stmt)

    def upsert_monthly_balance(
        self, session: Session, balance: MonthlyBalance
    ) -> MonthlyBalance:
        if balance.id is not None:
            session.flush()
            return balance

        try:
            with session.begin_nested():
                session.add(balance)
        except IntegrityError:
            # Another unit created the row between our read and our insert.
            existing = self.lock_monthly_balance(
                session, balance.user_id, balance.year, balance.month
            )
            if existing is None:
                raise
            logger.info(
                "upsert_monthly_balance: merged concurrent row"
                f" user_id={balance.user_id}"
                f" month={balance.year}-{balance.month:02d}"
            )
            if not existing.opening_balance_is_override:
                existing.opening_balance_cents = balance.opening_balance_cents
                existing.opening_balance_is_override = (
                    balance.opening_balance_is_override
                )
            existing.monthly_income_cents = balance.monthly_income_cents
            existing.monthly_expenses_cents = balance.monthly_expenses_cents
            existing.closing_balance_cents = (
                existing.opening_balance_cents
                + existing.monthly_income_cents
                - existing.monthly_expenses_cents
            )
            balance = existing
        session.flush()
        return balance

    # recurring rules

    def due_rule_ids(
        self, session: Session, today: date, user_id: Optional[int] = None
    ) -> list[int]:
        stmt = (
            select(RecurringRule.id)
            .where(
                RecurringRule.is_active.is_(True),
                RecurringRule.next_due_date <= today,
                or_(
                    RecurringRule.end_date.is_(None),
                    RecurringRule.next_due_date <= RecurringRule.end_date,
                ),
            )
            .order_by(RecurringRule.next_due_date, RecurringRule.id)
        )
        if user_id is not None:
            stmt = stmt.where(RecurringRule.user_id == user_id)
        return list(session.scalars(stmt).all())

    def lock_rule_for_update(self, session: Session, rule_id: int) -> RecurringRule:
        rule = session.scalar(
            select(RecurringRule)
            .where(RecurringRule.id == rule_id)
            .with_for_update()
        )
        if not rule:
            raise NotFoundError("Rule not found")
        return rule

    def advance_rule_cursor(
        self,
        session: Session,
        rule: RecurringRule,
        next_due_date: date,
        last_materialized_date: date,
    ) -> None:
        if next_due_date <= last_materialized_date:
            raise ValueError("next_due_date must be after last_materialized_date")
        if next_due_date < rule.next_due_date:
            raise ValueError("next_due_date cannot move backwards")
        rule.next_due_date = next_due_date
        rule.last_materialized_date = last_materialized_date
        session.flush()
