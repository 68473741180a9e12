from datetime import date

import pytest
from pydantic import ValidationError as SchemaValidationError

from errors import NotFoundError, ValidationError
from models import CurrencyCode, TransactionType
from periods import Period
from schemas import CategoryIn, TransactionIn, UserIn
from services import (
    DEFAULT_CATEGORIES,
    CategoryService,
    LedgerService,
    TransactionService,
    UserService,
)


def _payload(on: date, txn_type: TransactionType, amount_cents: int, **extra):
    return TransactionIn(date=on, type=txn_type, amount_cents=amount_cents, **extra)


def _closing(store, user_id, year, month):
    with store.unit_of_work() as session:
        row = store.get_monthly_balance(session, user_id, year, month)
    return row.closing_balance_cents


def test_create_updates_month_balance(store, user_id):
    TransactionService(store, user_id).create(
        _payload(date(2024, 3, 10), TransactionType.income, 2500)
    )
    assert _closing(store, user_id, 2024, 3) == 2500


def test_moving_transaction_recomputes_both_months(store, user_id):
    service = TransactionService(store, user_id)
    ledger = LedgerService(store)
    txn = service.create(_payload(date(2024, 3, 10), TransactionType.expense, 5000))
    for month in (3, 4, 5):
        ledger.compute_or_fetch_balance(user_id, 2024, month)

    service.update(txn.id, _payload(date(2024, 5, 2), TransactionType.expense, 5000))

    assert _closing(store, user_id, 2024, 3) == 0
    assert _closing(store, user_id, 2024, 4) == 0
    assert _closing(store, user_id, 2024, 5) == -5000


def test_delete_recomputes_month(store, user_id):
    service = TransactionService(store, user_id)
    txn = service.create(_payload(date(2024, 3, 10), TransactionType.expense, 800))
    assert _closing(store, user_id, 2024, 3) == -800

    service.delete(txn.id)

    assert _closing(store, user_id, 2024, 3) == 0
    with pytest.raises(NotFoundError):
        service.get(txn.id)


def test_other_users_transaction_is_not_found(store, user_id):
    txn = TransactionService(store, user_id).create(
        _payload(date(2024, 3, 10), TransactionType.income, 100)
    )
    other_id = UserService(store).create(UserIn(username="ravi")).id

    with pytest.raises(NotFoundError):
        TransactionService(store, other_id).delete(txn.id)


def test_category_type_must_match(store, user_id):
    salary = CategoryService(store, user_id).create(
        CategoryIn(name="Salary", type=TransactionType.income)
    )
    with pytest.raises(ValidationError):
        TransactionService(store, user_id).create(
            TransactionIn(
                date=date(2024, 3, 10),
                type=TransactionType.expense,
                amount_cents=100,
                category_id=salary.id,
            )
        )


def test_unknown_category_rejected(store, user_id):
    with pytest.raises(NotFoundError):
        TransactionService(store, user_id).create(
            TransactionIn(
                date=date(2024, 3, 10),
                type=TransactionType.expense,
                amount_cents=100,
                category_id=77,
            )
        )


def test_amount_must_be_positive():
    with pytest.raises(SchemaValidationError):
        _payload(date(2024, 3, 10), TransactionType.expense, 0)


def test_list_filters_by_period(store, user_id):
    service = TransactionService(store, user_id)
    for day in (1, 15, 28):
        service.create(_payload(date(2024, 2, day), TransactionType.expense, day))
    service.create(_payload(date(2024, 3, 1), TransactionType.expense, 1))

    txns = service.list(Period("custom", date(2024, 2, 1), date(2024, 2, 29)))

    assert [t.date.day for t in txns] == [28, 15, 1]


def test_ensure_defaults_is_repeatable(store, user_id):
    service = CategoryService(store, user_id)
    assert service.ensure_defaults() == len(DEFAULT_CATEGORIES)
    assert service.ensure_defaults() == 0
    assert all(c.is_default for c in service.list_all())


def test_duplicate_category_rejected(store, user_id):
    service = CategoryService(store, user_id)
    service.create(CategoryIn(name="Rent", type=TransactionType.expense))
    with pytest.raises(ValidationError):
        service.create(CategoryIn(name="rent ", type=TransactionType.expense))


def test_update_currency(store, user_id):
    user = UserService(store).update_currency(user_id, "usd")
    assert user.currency == CurrencyCode.usd

    with pytest.raises(ValidationError):
        UserService(store).update_currency(user_id, "XYZ")


def test_duplicate_username_rejected(store, user_id):
    with pytest.raises(ValidationError):
        UserService(store).create(UserIn(username="asha"))
