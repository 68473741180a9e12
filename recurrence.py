import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from balances import BalanceAggregator
from config import get_settings
from errors import ConflictError, NotFoundError
from models import Frequency, RecurringRule, Transaction
from store import LedgerStore


logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def _target_day(rule: RecurringRule) -> int:
    return rule.day_of_month or rule.anchor_date.day


def first_occurrence(rule: RecurringRule) -> date:
    anchor = rule.anchor_date
    if rule.frequency == Frequency.weekly and rule.day_of_week is not None:
        return anchor + timedelta(days=(rule.day_of_week - anchor.weekday()) % 7)
    if rule.frequency in (Frequency.monthly, Frequency.yearly) and rule.day_of_month:
        candidate = _add_months(anchor, 0, desired_day=rule.day_of_month)
        if candidate < anchor:
            step = 1 if rule.frequency == Frequency.monthly else 12
            candidate = _add_months(anchor, step, desired_day=rule.day_of_month)
        return candidate
    return anchor


def calculate_next_date(rule: RecurringRule, from_date: date) -> date:
    if rule.frequency == Frequency.daily:
        next_date = from_date + timedelta(days=rule.interval_count)
    elif rule.frequency == Frequency.weekly:
        next_date = from_date + timedelta(weeks=rule.interval_count)
        if rule.day_of_week is not None:
            next_date += timedelta(days=(rule.day_of_week - next_date.weekday()) % 7)
    elif rule.frequency == Frequency.monthly:
        next_date = _add_months(
            from_date, rule.interval_count, desired_day=_target_day(rule)
        )
    else:
        next_date = _add_months(
            from_date, 12 * rule.interval_count, desired_day=_target_day(rule)
        )

    if next_date <= from_date:
        raise ValueError(f"Rule {rule.id} does not advance past {from_date}")
    return next_date


def render_note(rule: RecurringRule) -> str:
    if rule.note:
        return f"{rule.note} (Auto: {rule.name})"
    return f"Auto: {rule.name}"


def is_due(rule: RecurringRule, today: date) -> bool:
    if not rule.is_active or rule.next_due_date > today:
        return False
    return rule.end_date is None or rule.next_due_date <= rule.end_date


@dataclass(frozen=True)
class MaterializationScope:
    user_id: Optional[int] = None

    @classmethod
    def for_user(cls, user_id: int) -> "MaterializationScope":
        return cls(user_id=user_id)

    @classmethod
    def all_users(cls) -> "MaterializationScope":
        return cls(user_id=None)

    @property
    def is_batch(self) -> bool:
        return self.user_id is None

    @property
    def label(self) -> str:
        return "all" if self.is_batch else f"user:{self.user_id}"


@dataclass(frozen=True)
class Occurrence:
    rule_id: int
    user_id: int
    occurrence_date: date
    transaction_id: Optional[int]
    balance_changed: bool
    still_due: bool


class RecurringMaterializer:
    """Turns due recurring rules into transactions, exactly once per occurrence.

    Each occurrence is one unit of work: lock the rule row, re-check its
    cursor, insert the transaction, recompute that month's balance and advance
    the cursor, then commit. A crash between occurrences leaves the cursor
    pointing at the first occurrence that was not committed.
    """

    def __init__(
        self,
        store: LedgerStore,
        aggregator: BalanceAggregator,
        *,
        max_catch_up: Optional[int] = None,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        if max_catch_up is None:
            max_catch_up = get_settings().max_catch_up_occurrences
        self.max_catch_up = max_catch_up

    def materialize_due(
        self, scope: MaterializationScope, today: Optional[date] = None
    ) -> int:
        today = today or local_today()
        with self.store.unit_of_work() as session:
            rule_ids = self.store.due_rule_ids(session, today, scope.user_id)

        created = 0
        for rule_id in rule_ids:
            try:
                created += self.materialize_rule(rule_id, today)
            except NotFoundError:
                # Deleted after it was listed; nothing left to post.
                logger.warning(
                    f"materialize_due: skipped rule_id={rule_id} reason=deleted"
                )
            except ConflictError:
                if not scope.is_batch:
                    raise
                logger.warning(
                    f"materialize_due: skipped rule_id={rule_id} reason=locked"
                )
        logger.info(
            f"materialize_due: scope={scope.label} today={today}"
            f" rules={len(rule_ids)} created={created}"
        )
        return created

    def materialize_rule(self, rule_id: int, today: Optional[date] = None) -> int:
        today = today or local_today()
        created = 0
        for occurrence in self.iter_due_occurrences(rule_id, today):
            if occurrence.transaction_id is not None:
                created += 1
        if created:
            logger.info(f"materialize_rule: rule_id={rule_id} created={created}")
        return created

    def iter_due_occurrences(self, rule_id: int, today: date) -> Iterator[Occurrence]:
        occurrence = None
        for _ in range(self.max_catch_up):
            with self.store.unit_of_work() as session:
                rule = self.store.lock_rule_for_update(session, rule_id)
                if not is_due(rule, today):
                    return
                occurrence = self._commit_occurrence(session, rule, today)
            if occurrence.balance_changed:
                self.aggregator.cascade_quietly(
                    occurrence.user_id,
                    occurrence.occurrence_date.year,
                    occurrence.occurrence_date.month,
                )
            yield occurrence
        if occurrence is not None and occurrence.still_due:
            logger.warning(
                f"materialize_rule: rule_id={rule_id} reached catch-up limit"
                f" {self.max_catch_up}; resuming on next run"
            )

    def _commit_occurrence(
        self, session: Session, rule: RecurringRule, today: date
    ) -> Occurrence:
        occurrence_date = rule.next_due_date
        transaction_id = None
        if self.store.occurrence_exists(session, rule, occurrence_date):
            logger.info(
                f"materialize_rule: rule_id={rule.id} occurrence={occurrence_date}"
                " already materialized"
            )
        else:
            txn = self.store.create_transaction(
                session,
                Transaction(
                    user_id=rule.user_id,
                    date=occurrence_date,
                    type=rule.type,
                    amount_cents=rule.amount_cents,
                    category_id=rule.category_id,
                    note=render_note(rule),
                    origin_rule_id=rule.id,
                    occurrence_date=occurrence_date,
                ),
            )
            transaction_id = txn.id

        _, changed = self.aggregator.recompute_in(
            session, rule.user_id, occurrence_date.year, occurrence_date.month
        )
        self.store.advance_rule_cursor(
            session,
            rule,
            next_due_date=calculate_next_date(rule, occurrence_date),
            last_materialized_date=occurrence_date,
        )
        return Occurrence(
            rule_id=rule.id,
            user_id=rule.user_id,
            occurrence_date=occurrence_date,
            transaction_id=transaction_id,
            balance_changed=changed,
            still_due=is_due(rule, today),
        )
