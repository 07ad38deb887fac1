from __future__ import annotations

import logging
import math
import uuid
from calendar import month_abbr
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import case, delete, extract, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    Budget,
    Frequency,
    RecurringSource,
    RecurringTransaction,
    Space,
    Transaction,
    TransactionType,
    shadow_id_for,
)
from recurrence import ProcessResult, RecurringEngine, compute_next_due
from schemas import (
    RecurringTransactionIn,
    RecurringTransactionPatch,
    TransactionFilters,
    TransactionIn,
    TransactionPatch,
)


logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class NotFound(ValueError):
    pass


class StorageError(RuntimeError):
    pass


@contextmanager
def storage_errors(session: Session, action: str) -> Iterator[None]:
    """Roll back and re-raise database failures as StorageError."""
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"storage_error: action={action!r} error={exc}")
        raise StorageError(f"Failed to {action}: {exc}") from exc


def _money(value: object) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS)


class SpaceService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self) -> str:
        space_id = str(uuid.uuid4())
        with storage_errors(self.session, "create space"):
            self.session.add(Space(space_id=space_id))
            self.session.commit()
        logger.info(f"space_created: space_id={space_id}")
        return space_id

    def get(self, space_id: str) -> Optional[Space]:
        with storage_errors(self.session, "get space"):
            return self.session.scalar(select(Space).where(Space.space_id == space_id))

    def exists(self, space_id: str) -> bool:
        try:
            return self.get(space_id) is not None
        except StorageError:
            logger.warning(f"space_exists: lookup failed space_id={space_id}")
            return False

    def delete(self, space_id: str) -> None:
        with storage_errors(self.session, "delete space"):
            self.session.execute(delete(Space).where(Space.space_id == space_id))
            self.session.commit()
        logger.info(f"space_deleted: space_id={space_id}")


@dataclass
class TransactionPage:
    items: list[Transaction]
    pagination: dict[str, object]
    stats: dict[str, object]
    category_stats: list[dict[str, object]] = field(default_factory=list)
    monthly_stats: list[dict[str, object]] = field(default_factory=list)


class TransactionService:
    def __init__(self, session: Session, space_id: str) -> None:
        self.session = session
        self.space_id = space_id

    def create(self, data: TransactionIn) -> Transaction:
        with storage_errors(self.session, "create transaction"):
            txn = Transaction(space_id=self.space_id, **data.model_dump())
            self.session.add(txn)
            self.session.commit()
            self.session.refresh(txn)
        logger.info(
            f"transaction_created: space_id={self.space_id} id={txn.id} "
            f"recurring={txn.is_recurring}"
        )
        recurring = RecurringTransactionService(self.session, self.space_id)
        recurring.sync_created_transaction(txn)
        return txn

    def get(self, transaction_id: str) -> Optional[Transaction]:
        stmt = select(Transaction).where(
            Transaction.space_id == self.space_id, Transaction.id == transaction_id
        )
        with storage_errors(self.session, "get transaction"):
            return self.session.scalar(stmt)

    def update(self, transaction_id: str, patch: TransactionPatch) -> Transaction:
        txn = self.get(transaction_id)
        if not txn:
            raise NotFound("Transaction not found")
        was_recurring = txn.is_recurring
        with storage_errors(self.session, "update transaction"):
            for key, value in patch.model_dump(exclude_unset=True).items():
                setattr(txn, key, value)
            self.session.commit()
            self.session.refresh(txn)
        recurring = RecurringTransactionService(self.session, self.space_id)
        recurring.sync_updated_transaction(txn, was_recurring=was_recurring)
        return txn

    def delete(self, transaction_id: str) -> None:
        txn = self.get(transaction_id)
        if not txn:
            raise NotFound("Transaction not found")
        with storage_errors(self.session, "delete transaction"):
            self.session.delete(txn)
            self.session.commit()
        recurring = RecurringTransactionService(self.session, self.space_id)
        recurring.remove_shadow(transaction_id)

    def _conditions(self, filters: TransactionFilters) -> list:
        conditions = [Transaction.space_id == self.space_id]
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.category:
            conditions.append(Transaction.category == filters.category)
        if filters.start_date:
            conditions.append(Transaction.date >= filters.start_date)
        if filters.end_date:
            conditions.append(Transaction.date <= filters.end_date)
        if filters.search:
            like = f"%{filters.search.lower()}%"
            conditions.append(
                or_(
                    func.lower(func.coalesce(Transaction.description, "")).like(like),
                    func.lower(Transaction.category).like(like),
                )
            )
        return conditions

    def list(self, filters: Optional[TransactionFilters] = None) -> TransactionPage:
        filters = filters or TransactionFilters()
        conditions = self._conditions(filters)
        stmt = (
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.date.desc(), Transaction.created_at.desc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        with storage_errors(self.session, "list transactions"):
            total = self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            items = list(self.session.scalars(stmt).all())

        total_pages = math.ceil(total / filters.limit)
        return TransactionPage(
            items=items,
            pagination={
                "page": filters.page,
                "limit": filters.limit,
                "total": total,
                "total_pages": total_pages,
                "has_next": filters.page < total_pages,
                "has_prev": filters.page > 1,
            },
            stats=self.stats(),
            category_stats=self.spending_by_category(),
            monthly_stats=self.monthly_stats(),
        )

    def stats(self) -> dict[str, object]:
        income = func.coalesce(
            func.sum(
                case(
                    (Transaction.type == TransactionType.income, Transaction.amount),
                    else_=0,
                )
            ),
            0,
        )
        expenses = func.coalesce(
            func.sum(
                case(
                    (Transaction.type == TransactionType.expense, Transaction.amount),
                    else_=0,
                )
            ),
            0,
        )
        stmt = select(func.count(Transaction.id), income, expenses).where(
            Transaction.space_id == self.space_id
        )
        with storage_errors(self.session, "get transaction statistics"):
            count, total_income, total_expenses = self.session.execute(stmt).one()
        total_income = _money(total_income)
        total_expenses = _money(total_expenses)
        return {
            "total_income": total_income,
            "total_expenses": total_expenses,
            "net_amount": total_income - total_expenses,
            "transaction_count": int(count or 0),
        }

    def spending_by_category(self) -> list[dict[str, object]]:
        total = func.sum(Transaction.amount).label("total")
        stmt = (
            select(Transaction.category, total, func.count(Transaction.id))
            .where(
                Transaction.space_id == self.space_id,
                Transaction.type == TransactionType.expense,
            )
            .group_by(Transaction.category)
            .order_by(total.desc(), Transaction.category)
        )
        with storage_errors(self.session, "get spending by category"):
            rows = self.session.execute(stmt).all()
        return [
            {"category": category, "total": _money(amount), "count": int(count)}
            for category, amount, count in rows
        ]

    def monthly_stats(self) -> list[dict[str, object]]:
        year = extract("year", Transaction.date).label("year")
        month = extract("month", Transaction.date).label("month")
        stmt = (
            select(year, month, Transaction.type, func.sum(Transaction.amount))
            .where(Transaction.space_id == self.space_id)
            .group_by(year, month, Transaction.type)
        )
        with storage_errors(self.session, "get monthly statistics"):
            rows = self.session.execute(stmt).all()

        buckets: dict[tuple[int, int], dict[str, Decimal]] = {}
        for y, m, txn_type, amount in rows:
            bucket = buckets.setdefault(
                (int(y), int(m)),
                {"income": Decimal("0.00"), "expenses": Decimal("0.00")},
            )
            key = "income" if txn_type == TransactionType.income else "expenses"
            bucket[key] += _money(amount)
        return [
            {
                "month": month_abbr[m],
                "year": y,
                "income": bucket["income"],
                "expenses": bucket["expenses"],
            }
            for (y, m), bucket in sorted(buckets.items())
        ]


class BudgetService:
    def __init__(self, session: Session, space_id: str) -> None:
        self.session = session
        self.space_id = space_id

    def get(self) -> Optional[Budget]:
        with storage_errors(self.session, "get budget"):
            return self.session.scalar(
                select(Budget).where(Budget.space_id == self.space_id)
            )

    def set(self, monthly_budget: Decimal) -> Budget:
        existing = self.get()
        with storage_errors(self.session, "set budget"):
            if existing:
                existing.monthly_budget = monthly_budget
                budget = existing
            else:
                budget = Budget(space_id=self.space_id, monthly_budget=monthly_budget)
                self.session.add(budget)
            self.session.commit()
            self.session.refresh(budget)
        logger.info(f"budget_set: space_id={self.space_id} amount={monthly_budget}")
        return budget

    def delete(self) -> None:
        with storage_errors(self.session, "delete budget"):
            self.session.execute(delete(Budget).where(Budget.space_id == self.space_id))
            self.session.commit()


def _shadow_payload(txn: Transaction) -> RecurringTransactionIn:
    name = txn.description or f"{txn.type.value} - {txn.category}"
    return RecurringTransactionIn(
        name=name[:200],
        type=txn.type,
        amount=txn.amount,
        category=txn.category,
        subcategory=txn.subcategory,
        description=txn.description,
        frequency=txn.recurrence_frequency,
        start_date=txn.date,
    )


def _as_patch(data: RecurringTransactionIn) -> RecurringTransactionPatch:
    return RecurringTransactionPatch(**data.model_dump())


class RecurringTransactionService:
    """Schedules of a space, including shadows of recurring-flagged transactions.

    A shadow record is keyed ``regular-<transaction id>`` and kept in step with
    its transaction by the ``sync_*`` hooks. Those hooks never raise: the
    transaction write they follow has already been committed.
    """

    def __init__(self, session: Session, space_id: str) -> None:
        self.session = session
        self.space_id = space_id

    def list(self) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .where(RecurringTransaction.space_id == self.space_id)
            .order_by(RecurringTransaction.created_at.desc())
        )
        with storage_errors(self.session, "list recurring transactions"):
            return list(self.session.scalars(stmt).all())

    def list_with_flagged(self) -> list[RecurringTransaction]:
        records = self.list()
        seen = {record.id for record in records}
        stmt = (
            select(Transaction)
            .where(
                Transaction.space_id == self.space_id,
                Transaction.is_recurring.is_(True),
                Transaction.recurrence_frequency.is_not(None),
            )
            .order_by(Transaction.created_at.desc())
        )
        with storage_errors(self.session, "list recurring-flagged transactions"):
            flagged = self.session.scalars(stmt).all()
        for txn in flagged:
            record_id = shadow_id_for(txn.id)
            if record_id in seen:
                continue
            seen.add(record_id)
            payload = _shadow_payload(txn)
            # Transient view only; it is never added to the session.
            records.append(
                RecurringTransaction(
                    id=record_id,
                    space_id=self.space_id,
                    next_due_date=compute_next_due(txn.date, txn.recurrence_frequency),
                    is_active=True,
                    source=RecurringSource.regular_transaction,
                    created_at=txn.created_at,
                    updated_at=txn.updated_at,
                    **payload.model_dump(),
                )
            )
        return records

    def get(self, recurring_id: str) -> Optional[RecurringTransaction]:
        stmt = select(RecurringTransaction).where(
            RecurringTransaction.space_id == self.space_id,
            RecurringTransaction.id == recurring_id,
        )
        with storage_errors(self.session, "get recurring transaction"):
            return self.session.scalar(stmt)

    def get_shadow(self, transaction_id: str) -> Optional[RecurringTransaction]:
        stmt = select(RecurringTransaction).where(
            RecurringTransaction.space_id == self.space_id,
            RecurringTransaction.source == RecurringSource.regular_transaction,
            RecurringTransaction.id == shadow_id_for(transaction_id),
        )
        with storage_errors(self.session, "get shadow recurring transaction"):
            return self.session.scalar(stmt)

    def _insert(
        self,
        data: RecurringTransactionIn,
        *,
        source: RecurringSource,
        record_id: Optional[str] = None,
    ) -> RecurringTransaction:
        record = RecurringTransaction(
            space_id=self.space_id,
            next_due_date=compute_next_due(data.start_date, data.frequency),
            is_active=True,
            source=source,
            **data.model_dump(),
        )
        if record_id:
            record.id = record_id
        with storage_errors(self.session, "create recurring transaction"):
            self.session.add(record)
            self.session.commit()
            self.session.refresh(record)
        logger.info(
            f"recurring_created: space_id={self.space_id} id={record.id} "
            f"source={source.value} next_due_date={record.next_due_date}"
        )
        return record

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        return self._insert(data, source=RecurringSource.dedicated)

    def create_from_regular_transaction(
        self, transaction_id: str, data: RecurringTransactionIn
    ) -> RecurringTransaction:
        record_id = shadow_id_for(transaction_id)
        if self.get(record_id):
            return self.update(record_id, _as_patch(data))
        return self._insert(
            data, source=RecurringSource.regular_transaction, record_id=record_id
        )

    def update(
        self, recurring_id: str, patch: RecurringTransactionPatch
    ) -> RecurringTransaction:
        record = self.get(recurring_id)
        if not record:
            raise NotFound("Recurring transaction not found")
        changes = patch.model_dump(exclude_unset=True)
        with storage_errors(self.session, "update recurring transaction"):
            for key, value in changes.items():
                setattr(record, key, value)
            if "start_date" in changes or "frequency" in changes:
                record.next_due_date = compute_next_due(
                    record.start_date, record.frequency, record.last_processed
                )
            self.session.commit()
            self.session.refresh(record)
        return record

    def delete(self, recurring_id: str) -> None:
        with storage_errors(self.session, "delete recurring transaction"):
            self.session.execute(
                delete(RecurringTransaction).where(
                    RecurringTransaction.space_id == self.space_id,
                    RecurringTransaction.id == recurring_id,
                )
            )
            self.session.commit()

    def due_before(self, as_of: Optional[date] = None) -> list[RecurringTransaction]:
        with storage_errors(self.session, "get due recurring transactions"):
            return RecurringEngine(self.session).due_before(self.space_id, as_of)

    def advance(
        self, recurring_id: str, last_processed: date, frequency: Frequency
    ) -> None:
        with storage_errors(self.session, "update next due date"):
            RecurringEngine(self.session).advance(
                recurring_id, last_processed, frequency
            )
            self.session.commit()

    def process_due(self, today: Optional[date] = None) -> ProcessResult:
        with storage_errors(self.session, "process due recurring transactions"):
            return RecurringEngine(self.session).process_due(self.space_id, today)

    def sync_created_transaction(self, txn: Transaction) -> None:
        if not (txn.is_recurring and txn.recurrence_frequency):
            return
        transaction_id = txn.id
        try:
            self.create_from_regular_transaction(transaction_id, _shadow_payload(txn))
        except Exception:
            self.session.rollback()
            logger.exception(
                f"shadow_sync: create failed transaction_id={transaction_id}"
            )

    def sync_updated_transaction(
        self, txn: Transaction, *, was_recurring: bool
    ) -> None:
        transaction_id = txn.id
        try:
            shadow = self.get_shadow(transaction_id)
            if txn.is_recurring and txn.recurrence_frequency:
                payload = _shadow_payload(txn)
                if shadow:
                    self.update(shadow.id, _as_patch(payload))
                else:
                    self.create_from_regular_transaction(transaction_id, payload)
            elif was_recurring and shadow:
                self.delete(shadow.id)
                logger.info(
                    f"shadow_sync: removed transaction_id={transaction_id} "
                    "reason=no_longer_recurring"
                )
        except Exception:
            self.session.rollback()
            logger.exception(
                f"shadow_sync: update failed transaction_id={transaction_id}"
            )

    def remove_shadow(self, transaction_id: str) -> None:
        try:
            self.delete(shadow_id_for(transaction_id))
        except Exception:
            self.session.rollback()
            logger.exception(
                f"shadow_sync: delete failed transaction_id={transaction_id}"
            )
