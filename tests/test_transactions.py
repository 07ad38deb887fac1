from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from database import Base, build_engine
from models import Budget, RecurringTransaction, Transaction, TransactionType
from schemas import TransactionFilters, TransactionIn, TransactionPatch
from services import BudgetService, NotFound, SpaceService, TransactionService


def _setup():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine, autoflush=False, expire_on_commit=False)
    space_id = SpaceService(session).create()
    return session, space_id


def _txn(
    amount: str,
    on: date,
    type: TransactionType = TransactionType.expense,
    category: str = "Food",
    description: Optional[str] = None,
) -> TransactionIn:
    return TransactionIn(
        type=type,
        amount=Decimal(amount),
        category=category,
        description=description,
        date=on,
    )


def test_list_paginates_newest_first():
    session, space_id = _setup()
    service = TransactionService(session, space_id)
    start = date(2024, 1, 1)
    for i in range(25):
        service.create(_txn("10.00", start + timedelta(days=i)))

    page = service.list(TransactionFilters(page=2, limit=10))
    assert len(page.items) == 10
    assert page.items[0].date == date(2024, 1, 15)
    assert page.pagination == {
        "page": 2,
        "limit": 10,
        "total": 25,
        "total_pages": 3,
        "has_next": True,
        "has_prev": True,
    }

    last = service.list(TransactionFilters(page=3, limit=10))
    assert len(last.items) == 5
    assert last.pagination["has_next"] is False


def test_list_empty_space():
    session, space_id = _setup()
    page = TransactionService(session, space_id).list()
    assert page.items == []
    assert page.pagination["total"] == 0
    assert page.pagination["total_pages"] == 0
    assert page.category_stats == []
    assert page.monthly_stats == []
    assert page.stats["net_amount"] == Decimal("0.00")


def test_filters_and_search():
    session, space_id = _setup()
    service = TransactionService(session, space_id)
    service.create(_txn("12.50", date(2024, 1, 5), description="Lunch with Ana"))
    service.create(_txn("40.00", date(2024, 2, 3), category="Transport"))
    service.create(
        _txn("2500.00", date(2024, 2, 1), TransactionType.income, "Salary")
    )

    def ids(**kwargs):
        return [t.category for t in service.list(TransactionFilters(**kwargs)).items]

    assert ids(type=TransactionType.income) == ["Salary"]
    assert ids(category="Transport") == ["Transport"]
    assert ids(start_date=date(2024, 2, 1), end_date=date(2024, 2, 2)) == ["Salary"]
    assert ids(search="LUNCH") == ["Food"]
    assert ids(search="transp") == ["Transport"]


def test_stats_are_space_wide_and_ignore_filters():
    session, space_id = _setup()
    service = TransactionService(session, space_id)
    service.create(_txn("100.00", date(2024, 1, 10), TransactionType.income, "Pay"))
    service.create(_txn("30.25", date(2024, 1, 11)))
    service.create(_txn("20.00", date(2024, 2, 1), category="Transport"))
    service.create(_txn("5.75", date(2024, 2, 2)))

    page = service.list(TransactionFilters(category="Transport"))
    assert page.pagination["total"] == 1
    assert page.stats == {
        "total_income": Decimal("100.00"),
        "total_expenses": Decimal("56.00"),
        "net_amount": Decimal("44.00"),
        "transaction_count": 4,
    }
    assert page.category_stats == [
        {"category": "Food", "total": Decimal("36.00"), "count": 2},
        {"category": "Transport", "total": Decimal("20.00"), "count": 1},
    ]
    assert page.monthly_stats == [
        {
            "month": "Jan",
            "year": 2024,
            "income": Decimal("100.00"),
            "expenses": Decimal("30.25"),
        },
        {
            "month": "Feb",
            "year": 2024,
            "income": Decimal("0.00"),
            "expenses": Decimal("25.75"),
        },
    ]


def test_update_and_delete_are_scoped_to_space():
    session, space_id = _setup()
    other_space = SpaceService(session).create()
    txn = TransactionService(session, space_id).create(_txn("9.99", date(2024, 3, 1)))

    other = TransactionService(session, other_space)
    with pytest.raises(NotFound):
        other.update(txn.id, TransactionPatch(category="Other"))
    with pytest.raises(NotFound):
        other.delete(txn.id)

    service = TransactionService(session, space_id)
    updated = service.update(txn.id, TransactionPatch(category="Groceries"))
    assert updated.category == "Groceries"
    assert updated.amount == Decimal("9.99")

    service.delete(txn.id)
    assert service.get(txn.id) is None


def test_transaction_patch_rejects_null_required_fields():
    with pytest.raises(ValueError):
        TransactionPatch(amount=None)
    with pytest.raises(ValueError):
        TransactionPatch(amount=Decimal("-1"))


def test_transaction_patch_frequency_clears_only_with_flag():
    with pytest.raises(ValueError):
        TransactionPatch(recurrence_frequency=None)
    with pytest.raises(ValueError):
        TransactionPatch(is_recurring=True, recurrence_frequency=None)

    patch = TransactionPatch(is_recurring=False, recurrence_frequency=None)
    assert patch.model_dump(exclude_unset=True) == {
        "is_recurring": False,
        "recurrence_frequency": None,
    }


def test_budget_upsert_and_delete():
    session, space_id = _setup()
    service = BudgetService(session, space_id)
    assert service.get() is None

    first = service.set(Decimal("1500.00"))
    second = service.set(Decimal("1800.00"))
    assert first.id == second.id
    assert service.get().monthly_budget == Decimal("1800.00")
    assert len(session.scalars(select(Budget)).all()) == 1

    service.delete()
    service.delete()
    assert service.get() is None


def test_deleting_space_cascades_to_children():
    session, space_id = _setup()
    TransactionService(session, space_id).create(
        TransactionIn(
            type=TransactionType.expense,
            amount=Decimal("8.00"),
            category="Music",
            date=date(2024, 1, 1),
            is_recurring=True,
            recurrence_frequency="monthly",
        )
    )
    BudgetService(session, space_id).set(Decimal("100.00"))

    SpaceService(session).delete(space_id)

    assert SpaceService(session).exists(space_id) is False
    assert session.scalars(select(Transaction)).all() == []
    assert session.scalars(select(Budget)).all() == []
    assert session.scalars(select(RecurringTransaction)).all() == []
