from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from balances import BalanceAggregator
from errors import NotFoundError, ValidationError
from models import (
    Category,
    CurrencyCode,
    MonthlyBalance,
    RecurringRule,
    Transaction,
    TransactionType,
    User,
)
from periods import Period
from recurrence import MaterializationScope, RecurringMaterializer, first_occurrence
from schemas import (
    CategoryIn,
    MaterializationResult,
    RecurringRuleIn,
    TransactionIn,
    UserIn,
)
from store import LedgerStore


logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"

DEFAULT_CATEGORIES: list[tuple[str, str, TransactionType]] = [
    ("Food & Dining", "#e74c3c", TransactionType.expense),
    ("Bills & Utilities", "#34495e", TransactionType.expense),
    ("Shopping", "#9b59b6", TransactionType.expense),
    ("Transportation", "#f39c12", TransactionType.expense),
    ("Entertainment", "#e67e22", TransactionType.expense),
    ("Healthcare", "#1abc9c", TransactionType.expense),
    ("Rent", "#6c757d", TransactionType.expense),
    ("Loan EMI", "#dc3545", TransactionType.expense),
    ("Savings", "#ffd700", TransactionType.expense),
    ("Other Expenses", "#95a5a6", TransactionType.expense),
    ("Salary", "#27ae60", TransactionType.income),
    ("Freelance", "#16a085", TransactionType.income),
    ("Investment Returns", "#2980b9", TransactionType.income),
    ("Interest Income", "#d35400", TransactionType.income),
    ("Other Income", "#aed6f1", TransactionType.income),
]

_SCHEDULE_FIELDS = (
    "frequency",
    "interval_count",
    "anchor_date",
    "day_of_month",
    "day_of_week",
)


def validate_month(year: int, month: int) -> None:
    if not 1970 <= year <= 3000:
        raise ValidationError("Year must be between 1970 and 3000")
    if not 1 <= month <= 12:
        raise ValidationError("Month must be between 1 and 12")


def _check_category(
    session: Session,
    user_id: int,
    category_id: Optional[int],
    txn_type: TransactionType,
) -> None:
    if category_id is None:
        return
    category = session.get(Category, category_id)
    if not category or category.user_id != user_id:
        raise NotFoundError("Category not found")
    if category.type != txn_type:
        raise ValidationError("Category type mismatch")


class UserService:
    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def create(self, data: UserIn) -> User:
        with self.store.unit_of_work() as session:
            existing = session.scalar(
                select(User.id).where(User.username == data.username.strip())
            )
            if existing:
                raise ValidationError("Username already taken")
            user = User(username=data.username.strip(), currency=data.currency)
            session.add(user)
            session.flush()
        return user

    def get(self, user_id: int) -> User:
        with self.store.unit_of_work() as session:
            return self.store.get_user(session, user_id)

    def update_currency(self, user_id: int, currency: str) -> User:
        try:
            code = CurrencyCode((currency or "").strip().upper())
        except ValueError as exc:
            raise ValidationError(f"Unsupported currency: {currency}") from exc
        with self.store.unit_of_work() as session:
            user = self.store.get_user(session, user_id)
            user.currency = code
        logger.info(f"update_currency: user_id={user_id} currency={code.value}")
        return user


class CategoryService:
    def __init__(self, store: LedgerStore, user_id: int) -> None:
        self.store = store
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        with self.store.unit_of_work() as session:
            stmt = (
                select(Category)
                .where(Category.user_id == self.user_id)
                .order_by(Category.type, Category.name)
            )
            return list(session.scalars(stmt).all())

    def create(self, data: CategoryIn) -> Category:
        with self.store.unit_of_work() as session:
            existing = session.scalar(
                select(Category).where(
                    Category.user_id == self.user_id,
                    Category.type == data.type,
                    func.lower(Category.name) == data.name.strip().lower(),
                )
            )
            if existing:
                raise ValidationError("Category with this name already exists")
            category = Category(
                user_id=self.user_id,
                name=data.name.strip(),
                type=data.type,
                color=data.color,
                is_default=data.is_default,
            )
            session.add(category)
            session.flush()
        return category

    def ensure_defaults(self) -> int:
        with self.store.unit_of_work() as session:
            self.store.get_user(session, self.user_id)
            present = {
                (row.name, row.type)
                for row in session.execute(
                    select(Category.name, Category.type).where(
                        Category.user_id == self.user_id
                    )
                ).all()
            }
            added = 0
            for name, color, txn_type in DEFAULT_CATEGORIES:
                if (name, txn_type) in present:
                    continue
                session.add(
                    Category(
                        user_id=self.user_id,
                        name=name,
                        color=color,
                        type=txn_type,
                        is_default=True,
                    )
                )
                added += 1
        return added

    def delete(self, category_id: int) -> None:
        # Transactions keep their amounts; only the label goes away.
        with self.store.unit_of_work() as session:
            category = session.get(Category, category_id)
            if not category or category.user_id != self.user_id:
                raise NotFoundError("Category not found")
            session.delete(category)


class TransactionService:
    def __init__(self, store: LedgerStore, user_id: int) -> None:
        self.store = store
        self.user_id = user_id
        self.aggregator = BalanceAggregator(store)

    def _get(self, session: Session, transaction_id: int) -> Transaction:
        txn = session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        return txn

    def get(self, transaction_id: int) -> Transaction:
        with self.store.unit_of_work() as session:
            return self._get(session, transaction_id)

    def create(self, data: TransactionIn) -> Transaction:
        with self.store.unit_of_work() as session:
            self.store.get_user(session, self.user_id)
            _check_category(session, self.user_id, data.category_id, data.type)
            txn = self.store.create_transaction(
                session,
                Transaction(
                    user_id=self.user_id,
                    date=data.date,
                    type=data.type,
                    amount_cents=data.amount_cents,
                    category_id=data.category_id,
                    note=data.note,
                ),
            )
            _, changed = self.aggregator.recompute_in(
                session, self.user_id, data.date.year, data.date.month
            )
        if changed:
            self.aggregator.cascade_quietly(
                self.user_id, data.date.year, data.date.month
            )
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        with self.store.unit_of_work() as session:
            txn = self._get(session, transaction_id)
            _check_category(session, self.user_id, data.category_id, data.type)
            old_date = txn.date

            txn.date = data.date
            txn.type = data.type
            txn.amount_cents = data.amount_cents
            txn.category_id = data.category_id
            txn.note = data.note
            session.flush()

            months_to_recompute = sorted(
                {(old_date.year, old_date.month), (data.date.year, data.date.month)}
            )
            changed_months = []
            for y, m in months_to_recompute:
                _, changed = self.aggregator.recompute_in(session, self.user_id, y, m)
                if changed:
                    changed_months.append((y, m))
        for y, m in changed_months:
            self.aggregator.cascade_quietly(self.user_id, y, m)
        return txn

    def delete(self, transaction_id: int) -> None:
        with self.store.unit_of_work() as session:
            txn = self._get(session, transaction_id)
            txn_date = txn.date
            session.delete(txn)
            session.flush()
            _, changed = self.aggregator.recompute_in(
                session, self.user_id, txn_date.year, txn_date.month
            )
        if changed:
            self.aggregator.cascade_quietly(self.user_id, txn_date.year, txn_date.month)

    def list(
        self, period: Period, limit: int = 50, offset: int = 0
    ) -> list[Transaction]:
        with self.store.unit_of_work() as session:
            stmt = (
                select(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.date.between(period.start, period.end),
                )
                .order_by(Transaction.date.desc(), Transaction.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(session.scalars(stmt).all())


class RecurringRuleService:
    def __init__(self, store: LedgerStore, user_id: int) -> None:
        self.store = store
        self.user_id = user_id

    def _get(self, session: Session, rule_id: int) -> RecurringRule:
        rule = session.get(RecurringRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise NotFoundError("Rule not found")
        return rule

    def get(self, rule_id: int) -> RecurringRule:
        with self.store.unit_of_work() as session:
            return self._get(session, rule_id)

    def list(self) -> list[RecurringRule]:
        with self.store.unit_of_work() as session:
            stmt = (
                select(RecurringRule)
                .where(RecurringRule.user_id == self.user_id)
                .order_by(RecurringRule.next_due_date, RecurringRule.id)
            )
            return list(session.scalars(stmt).all())

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        with self.store.unit_of_work() as session:
            self.store.get_user(session, self.user_id)
            _check_category(session, self.user_id, data.category_id, data.type)
            rule = RecurringRule(user_id=self.user_id, **data.model_dump())
            rule.next_due_date = first_occurrence(rule)
            session.add(rule)
            session.flush()
        logger.info(
            f"rule_created: rule_id={rule.id} user_id={self.user_id}"
            f" next_due={rule.next_due_date}"
        )
        return rule

    def update(self, rule_id: int, data: RecurringRuleIn) -> RecurringRule:
        with self.store.unit_of_work() as session:
            rule = self.store.lock_rule_for_update(session, rule_id)
            if rule.user_id != self.user_id:
                raise NotFoundError("Rule not found")
            _check_category(session, self.user_id, data.category_id, data.type)
            values = data.model_dump()
            schedule_changed = any(
                getattr(rule, field) != values[field] for field in _SCHEDULE_FIELDS
            )
            for field, value in values.items():
                setattr(rule, field, value)
            # The cursor belongs to the materializer once anything was posted.
            if schedule_changed and rule.last_materialized_date is None:
                rule.next_due_date = first_occurrence(rule)
            session.flush()
        return rule

    def set_active(self, rule_id: int, is_active: bool) -> RecurringRule:
        with self.store.unit_of_work() as session:
            rule = self._get(session, rule_id)
            rule.is_active = is_active
        return rule

    def delete(self, rule_id: int) -> None:
        with self.store.unit_of_work() as session:
            rule = self._get(session, rule_id)
            session.delete(rule)


class AnalyticsService:
    def __init__(self, store: LedgerStore, user_id: int) -> None:
        self.store = store
        self.user_id = user_id

    def totals(self, period: Period) -> dict[str, int]:
        with self.store.unit_of_work() as session:
            row = session.execute(
                select(
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
                    func.count(Transaction.id).label("count"),
                ).where(
                    Transaction.user_id == self.user_id,
                    Transaction.date.between(period.start, period.end),
                )
            ).one()
        income = int(row.income)
        expenses = int(row.expenses)
        return {
            "total_income_cents": income,
            "total_expenses_cents": expenses,
            "net_balance_cents": income - expenses,
            "transaction_count": int(row.count),
        }

    def category_breakdown(self, period: Period) -> list[dict[str, object]]:
        with self.store.unit_of_work() as session:
            rows = session.execute(
                select(
                    Category.name,
                    Category.color,
                    Transaction.type,
                    func.sum(Transaction.amount_cents).label("total"),
                )
                .select_from(Transaction)
                .outerjoin(Category, Category.id == Transaction.category_id)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.date.between(period.start, period.end),
                )
                .group_by(Category.id, Category.name, Category.color, Transaction.type)
            ).all()

        buckets: dict[str, dict[str, object]] = {}
        for row in rows:
            name = row.name or UNCATEGORIZED
            bucket = buckets.setdefault(
                name,
                {
                    "name": name,
                    "color": row.color,
                    "income_cents": 0,
                    "expenses_cents": 0,
                    "total_cents": 0,
                },
            )
            amount = int(row.total or 0)
            if row.type == TransactionType.income:
                bucket["income_cents"] += amount
            else:
                bucket["expenses_cents"] += amount
            bucket["total_cents"] += amount
        return sorted(buckets.values(), key=lambda b: b["total_cents"], reverse=True)


class LedgerService:
    """Entry points the HTTP adapter and the scheduler call."""

    def __init__(self, store: LedgerStore) -> None:
        self.store = store
        self.aggregator = BalanceAggregator(store)
        self.materializer = RecurringMaterializer(store, self.aggregator)

    def _require_user(self, user_id: int) -> None:
        with self.store.unit_of_work() as session:
            self.store.get_user(session, user_id)

    def compute_or_fetch_balance(
        self, user_id: int, year: int, month: int
    ) -> MonthlyBalance:
        validate_month(year, month)
        self._require_user(user_id)
        return self.aggregator.recompute(user_id, year, month)

    def set_opening_balance(
        self, user_id: int, year: int, month: int, value_cents: int
    ) -> MonthlyBalance:
        validate_month(year, month)
        if isinstance(value_cents, bool) or not isinstance(value_cents, int):
            raise ValidationError("Opening balance must be an integer amount of cents")
        self._require_user(user_id)
        return self.aggregator.set_override(user_id, year, month, value_cents)

    def run_recurring_materialization(
        self, scope: MaterializationScope, today: Optional[date] = None
    ) -> MaterializationResult:
        if scope.user_id is not None:
            self._require_user(scope.user_id)
        created = self.materializer.materialize_due(scope, today)
        return MaterializationResult(
            transactions_created=created,
            processed_at=datetime.now(timezone.utc),
        )
