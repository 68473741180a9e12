from datetime import date

import pytest

from errors import ValidationError
from models import TransactionType
from periods import Period, resolve_period
from schemas import CategoryIn, TransactionIn
from services import (
    UNCATEGORIZED,
    AnalyticsService,
    CategoryService,
    TransactionService,
)


MARCH = Period("custom", date(2024, 3, 1), date(2024, 3, 31))


def _seed(store, user_id):
    categories = CategoryService(store, user_id)
    salary = categories.create(
        CategoryIn(name="Salary", type=TransactionType.income, color="#27ae60")
    )
    rent = categories.create(
        CategoryIn(name="Rent", type=TransactionType.expense, color="#6c757d")
    )
    txns = TransactionService(store, user_id)
    for on, txn_type, cents, category_id in [
        (date(2024, 3, 1), TransactionType.income, 500000, salary.id),
        (date(2024, 3, 5), TransactionType.expense, 200000, rent.id),
        (date(2024, 3, 9), TransactionType.expense, 1500, None),
        (date(2024, 4, 1), TransactionType.income, 500000, salary.id),
    ]:
        txns.create(
            TransactionIn(
                date=on, type=txn_type, amount_cents=cents, category_id=category_id
            )
        )
    return salary, rent


def test_totals_for_period(store, user_id):
    _seed(store, user_id)

    totals = AnalyticsService(store, user_id).totals(MARCH)

    assert totals == {
        "total_income_cents": 500000,
        "total_expenses_cents": 201500,
        "net_balance_cents": 298500,
        "transaction_count": 3,
    }


def test_totals_empty_period(store, user_id):
    totals = AnalyticsService(store, user_id).totals(MARCH)
    assert totals["transaction_count"] == 0
    assert totals["net_balance_cents"] == 0


def test_category_breakdown_sorted_with_uncategorized_bucket(store, user_id):
    _seed(store, user_id)

    rows = AnalyticsService(store, user_id).category_breakdown(MARCH)

    assert [r["name"] for r in rows] == ["Salary", "Rent", UNCATEGORIZED]
    assert rows[0]["income_cents"] == 500000
    assert rows[1]["expenses_cents"] == 200000
    assert rows[2]["color"] is None
    assert rows[2]["total_cents"] == 1500


def test_deleted_category_falls_back_to_uncategorized(store, user_id):
    _, rent = _seed(store, user_id)
    CategoryService(store, user_id).delete(rent.id)

    rows = AnalyticsService(store, user_id).category_breakdown(MARCH)

    uncategorized = next(r for r in rows if r["name"] == UNCATEGORIZED)
    assert uncategorized["expenses_cents"] == 201500


def test_resolve_period():
    today = date(2024, 3, 18)
    assert resolve_period(None, None, None, today=today).start == date(1970, 1, 1)
    this_month = resolve_period("this_month", None, None, today=today)
    assert (this_month.start, this_month.end) == (date(2024, 3, 1), date(2024, 3, 31))
    last_month = resolve_period("last_month", None, None, today=date(2024, 1, 5))
    assert (last_month.start, last_month.end) == (date(2023, 12, 1), date(2023, 12, 31))
    custom = resolve_period("custom", "2024-02-01", "2024-02-10", today=today)
    assert custom.end == date(2024, 2, 10)


def test_resolve_period_rejects_inverted_range():
    with pytest.raises(ValidationError):
        resolve_period("custom", "2024-02-10", "2024-02-01")
    with pytest.raises(ValidationError):
        resolve_period("custom", "2024-02-10", None)
