from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from models import (
    Frequency,
    RecurringSource,
    RecurringTransaction,
    TransactionType,
    shadow_id_for,
)
from schemas import (
    RecurringTransactionIn,
    RecurringTransactionPatch,
    TransactionIn,
    TransactionPatch,
)
from services import (
    NotFound,
    RecurringTransactionService,
    SpaceService,
    TransactionService,
)


def _setup():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine, autoflush=False, expire_on_commit=False)
    space_id = SpaceService(session).create()
    return session, space_id


def _rent(**overrides) -> RecurringTransactionIn:
    data = {
        "name": "Rent",
        "type": TransactionType.expense,
        "amount": Decimal("1200.00"),
        "category": "Housing",
        "frequency": Frequency.monthly,
        "start_date": date(2024, 1, 15),
    }
    data.update(overrides)
    return RecurringTransactionIn(**data)


def _flagged_txn(**overrides) -> TransactionIn:
    data = {
        "type": TransactionType.expense,
        "amount": Decimal("15.99"),
        "category": "Subscriptions",
        "description": "Streaming",
        "date": date(2024, 1, 31),
        "is_recurring": True,
        "recurrence_frequency": Frequency.monthly,
    }
    data.update(overrides)
    return TransactionIn(**data)


def test_create_sets_next_due_from_start_date():
    session, space_id = _setup()
    record = RecurringTransactionService(session, space_id).create(_rent())

    assert record.next_due_date == date(2024, 2, 15)
    assert record.last_processed is None
    assert record.is_active is True
    assert record.source == RecurringSource.dedicated


def test_update_recomputes_next_due_from_last_processed():
    session, space_id = _setup()
    service = RecurringTransactionService(session, space_id)
    record = service.create(_rent())
    service.advance(record.id, date(2024, 2, 15), Frequency.monthly)

    updated = service.update(
        record.id, RecurringTransactionPatch(frequency=Frequency.weekly)
    )
    assert updated.last_processed == date(2024, 2, 15)
    assert updated.next_due_date == date(2024, 2, 22)


def test_update_without_schedule_change_keeps_next_due():
    session, space_id = _setup()
    service = RecurringTransactionService(session, space_id)
    record = service.create(_rent())

    updated = service.update(
        record.id, RecurringTransactionPatch(amount=Decimal("1250.00"))
    )
    assert updated.amount == Decimal("1250.00")
    assert updated.next_due_date == date(2024, 2, 15)


def test_update_missing_record_raises():
    session, space_id = _setup()
    service = RecurringTransactionService(session, space_id)
    with pytest.raises(NotFound):
        service.update("missing", RecurringTransactionPatch(name="Nope"))


def test_patch_rejects_null_and_derived_fields():
    with pytest.raises(ValueError):
        RecurringTransactionPatch(name=None)
    with pytest.raises(ValueError):
        RecurringTransactionPatch(next_due_date=date(2024, 1, 1))


def test_delete_is_idempotent():
    session, space_id = _setup()
    service = RecurringTransactionService(session, space_id)
    record = service.create(_rent())

    service.delete(record.id)
    service.delete(record.id)
    assert service.list() == []


def test_records_are_scoped_to_their_space():
    session, space_id = _setup()
    other_space = SpaceService(session).create()
    record = RecurringTransactionService(session, space_id).create(_rent())

    other = RecurringTransactionService(session, other_space)
    assert other.get(record.id) is None
    assert other.list() == []


def test_flagged_transaction_gets_shadow_record():
    session, space_id = _setup()
    txn = TransactionService(session, space_id).create(_flagged_txn())

    shadow = RecurringTransactionService(session, space_id).get_shadow(txn.id)
    assert shadow is not None
    assert shadow.id == shadow_id_for(txn.id)
    assert shadow.source == RecurringSource.regular_transaction
    assert shadow.name == "Streaming"
    assert shadow.start_date == date(2024, 1, 31)
    assert shadow.next_due_date == date(2024, 2, 29)


def test_unflagged_transaction_has_no_shadow():
    session, space_id = _setup()
    TransactionService(session, space_id).create(
        _flagged_txn(is_recurring=False, recurrence_frequency=None)
    )
    assert RecurringTransactionService(session, space_id).list() == []


def test_shadow_name_falls_back_to_type_and_category():
    session, space_id = _setup()
    txn = TransactionService(session, space_id).create(
        _flagged_txn(description=None)
    )
    shadow = RecurringTransactionService(session, space_id).get_shadow(txn.id)
    assert shadow.name == "expense - Subscriptions"


def test_shadow_follows_transaction_updates():
    session, space_id = _setup()
    transactions = TransactionService(session, space_id)
    recurring = RecurringTransactionService(session, space_id)
    txn = transactions.create(_flagged_txn())

    transactions.update(
        txn.id,
        TransactionPatch(amount=Decimal("17.99"), recurrence_frequency="yearly"),
    )
    shadow = recurring.get_shadow(txn.id)
    assert shadow.amount == Decimal("17.99")
    assert shadow.frequency == Frequency.yearly
    assert shadow.next_due_date == date(2025, 1, 31)

    transactions.update(txn.id, TransactionPatch(is_recurring=False))
    assert recurring.get_shadow(txn.id) is None

    transactions.update(txn.id, TransactionPatch(is_recurring=True))
    assert recurring.get_shadow(txn.id) is not None


def test_deleting_transaction_removes_shadow():
    session, space_id = _setup()
    transactions = TransactionService(session, space_id)
    txn = transactions.create(_flagged_txn())

    transactions.delete(txn.id)
    remaining = session.scalars(select(RecurringTransaction)).all()
    assert remaining == []


def test_shadow_sync_failure_does_not_fail_transaction_write(monkeypatch):
    session, space_id = _setup()

    def broken_insert(self, *args, **kwargs):
        raise RuntimeError("storage offline")

    monkeypatch.setattr(RecurringTransactionService, "_insert", broken_insert)

    txn = TransactionService(session, space_id).create(_flagged_txn())
    assert TransactionService(session, space_id).get(txn.id) is not None
    assert RecurringTransactionService(session, space_id).list() == []


def test_create_from_regular_transaction_updates_existing_shadow():
    session, space_id = _setup()
    service = RecurringTransactionService(session, space_id)
    first = service.create_from_regular_transaction("txn-1", _rent())
    second = service.create_from_regular_transaction(
        "txn-1", _rent(amount=Decimal("1300.00"))
    )

    assert first.id == second.id == "regular-txn-1"
    assert second.amount == Decimal("1300.00")
    assert len(service.list()) == 1


def test_list_with_flagged_includes_transactions_without_shadow():
    session, space_id = _setup()
    recurring = RecurringTransactionService(session, space_id)
    recurring.create(_rent())
    txn = TransactionService(session, space_id).create(_flagged_txn())

    # Stored shadow is reported once.
    ids = [record.id for record in recurring.list_with_flagged()]
    assert ids.count(shadow_id_for(txn.id)) == 1
    assert len(ids) == 2

    recurring.delete(shadow_id_for(txn.id))
    records = recurring.list_with_flagged()
    view = next(r for r in records if r.id == shadow_id_for(txn.id))
    assert view.source == RecurringSource.regular_transaction
    assert view.next_due_date == date(2024, 2, 29)
    assert len(recurring.list()) == 1


def test_process_due_through_service():
    session, space_id = _setup()
    service = RecurringTransactionService(session, space_id)
    record = service.create(_rent(start_date=date(2023, 12, 15)))

    result = service.process_due(date(2024, 1, 20))
    assert result.processed == 1
    snapshot, txn = result.items[0]
    assert txn.date == date(2024, 1, 15)
    assert snapshot.next_due_date == txn.date
    assert service.get(record.id).next_due_date == date(2024, 2, 15)
    assert service.due_before(date(2024, 1, 20)) == []
